from datetime import date, datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from models import db, Book, Borrowing, NotificationLog
from lifecycle import AuthContext
from policy import BORROWED, RETURNED
import errors
import ledger
import lifecycle
import notifications

NOW = datetime(2024, 1, 1, 9, 30)


def available(book_id):
    return db.session.get(Book, book_id).available_copies


def test_borrow_creates_record_and_reserves_copy(make_book, auth):
    book = make_book(copies=3)
    borrowing = lifecycle.borrow(auth, book.id, now=NOW)

    assert borrowing.id is not None
    assert borrowing.status == BORROWED
    assert borrowing.borrowed_at == NOW
    assert borrowing.due_date == date(2024, 1, 15)
    assert borrowing.renewal_count == 0
    assert available(book.id) == 2


def test_borrow_with_custom_loan_period(make_book, auth):
    book = make_book()
    borrowing = lifecycle.borrow(auth, book.id, loan_days=7, now=NOW)
    assert borrowing.due_date == date(2024, 1, 8)


@pytest.mark.parametrize('days', [0, -3, '14', True])
def test_borrow_rejects_bad_loan_period(make_book, auth, days):
    book = make_book()
    with pytest.raises(errors.InvalidRequest):
        lifecycle.borrow(auth, book.id, loan_days=days)
    assert available(book.id) == 1


def test_scenario_borrow_twice_then_late_return(make_book, auth):
    book = make_book(copies=3)
    borrowing = lifecycle.borrow(auth, book.id, now=NOW)
    assert available(book.id) == 2

    with pytest.raises(errors.AlreadyBorrowed):
        lifecycle.borrow(auth, book.id, now=NOW)
    assert available(book.id) == 2

    receipt = lifecycle.return_book(auth, borrowing.id, now=NOW + timedelta(days=20))
    assert receipt.fine_amount == Decimal('6.00')
    assert receipt.overdue_days == 6
    assert receipt.borrowing.status == RETURNED
    assert receipt.borrowing.fine_amount == Decimal('6.00')
    assert available(book.id) == 3


def test_borrow_again_after_return(make_book, auth):
    book = make_book()
    first = lifecycle.borrow(auth, book.id, now=NOW)
    lifecycle.return_book(auth, first.id, now=NOW)
    second = lifecycle.borrow(auth, book.id, now=NOW)
    assert second.id != first.id
    assert available(book.id) == 0


def test_round_trip_restores_availability(make_book, auth):
    book = make_book(copies=2)
    borrowing = lifecycle.borrow(auth, book.id)
    receipt = lifecycle.return_book(auth, borrowing.id)
    assert receipt.fine_amount == Decimal('0.00')
    assert receipt.overdue_days == 0
    assert available(book.id) == 2


def test_return_is_idempotent_safe(make_book, auth):
    book = make_book(copies=1)
    borrowing = lifecycle.borrow(auth, book.id)
    lifecycle.return_book(auth, borrowing.id)

    with pytest.raises(errors.NotBorrowed):
        lifecycle.return_book(auth, borrowing.id)
    assert available(book.id) == 1


def test_last_copy_goes_to_one_borrower(make_book, make_user):
    book = make_book(copies=1)
    alice = AuthContext.for_user(make_user('Alice'))
    bob = AuthContext.for_user(make_user('Bob'))

    lifecycle.borrow(alice, book.id)
    with pytest.raises(errors.NoCopiesAvailable):
        lifecycle.borrow(bob, book.id)

    assert available(book.id) == 0
    assert Borrowing.query.filter_by(book_id=book.id, status=BORROWED).count() == 1


def test_borrow_unknown_book(auth):
    with pytest.raises(errors.NotFound):
        lifecycle.borrow(auth, 404)
    assert Borrowing.query.count() == 0


def test_inactive_user_cannot_borrow(make_book, make_user):
    book = make_book()
    user = make_user('Carol', is_active=False)
    with pytest.raises(errors.AccountInactive):
        lifecycle.borrow(AuthContext.for_user(user), book.id)
    assert available(book.id) == 1


def test_anonymous_borrow_is_refused(make_book):
    book = make_book()
    with pytest.raises(errors.Unauthorized):
        lifecycle.borrow(AuthContext(), book.id)


def test_failed_insert_rolls_back_reservation(make_book, auth, monkeypatch):
    book = make_book(copies=2)
    reserved = []
    reserve_copy = ledger.reserve_copy

    def reserve(book_id):
        reserved.append(reserve_copy(book_id))

    def undated(**fields):
        fields['due_date'] = None
        return Borrowing(**fields)
    undated.query = Borrowing.query

    monkeypatch.setattr(ledger, 'reserve_copy', reserve)
    monkeypatch.setattr(lifecycle, 'Borrowing', undated)
    # a NOT NULL failure is not the active-loan index, so it is not AlreadyBorrowed
    with pytest.raises(IntegrityError):
        lifecycle.borrow(auth, book.id)

    assert len(reserved) == 1
    assert available(book.id) == 2
    assert Borrowing.query.count() == 0


def test_lock_timeout_is_busy(make_book, auth, monkeypatch):
    book = make_book(copies=2)

    def locked(book_id):
        raise OperationalError('SELECT ... FOR UPDATE', {}, Exception('lock wait timeout'))

    monkeypatch.setattr(ledger, 'reserve_copy', locked)
    with pytest.raises(errors.Busy):
        lifecycle.borrow(auth, book.id)
    assert available(book.id) == 2
    assert Borrowing.query.count() == 0


def test_active_loan_index_maps_to_already_borrowed(make_book, auth, user):
    book = make_book(copies=2)
    lifecycle.borrow(auth, book.id, now=NOW)

    # a second active row for the same pair, as a racing borrow would write it
    with pytest.raises(errors.AlreadyBorrowed):
        with lifecycle.transaction(integrity_errors=lifecycle.ACTIVE_LOAN):
            db.session.add(Borrowing(user_id=user.id, book_id=book.id, status=BORROWED,
                                     borrowed_at=NOW, due_date=NOW.date()))
    assert Borrowing.query.filter_by(book_id=book.id, status=BORROWED).count() == 1


def test_unmapped_integrity_error_is_reraised(make_book):
    book = make_book()
    with pytest.raises(IntegrityError):
        with lifecycle.transaction(integrity_errors=lifecycle.ACTIVE_LOAN):
            db.session.add(Borrowing(user_id=999, book_id=book.id, status=BORROWED,
                                     borrowed_at=NOW, due_date=None))
    assert Borrowing.query.count() == 0


def test_users_only_see_their_own_borrowings(make_book, make_user, auth):
    book = make_book()
    borrowing = lifecycle.borrow(auth, book.id)
    other = AuthContext.for_user(make_user('Mallory'))

    with pytest.raises(errors.NotFound):
        lifecycle.return_book(other, borrowing.id)
    with pytest.raises(errors.NotFound):
        lifecycle.renew(other, borrowing.id)
    assert available(book.id) == 0


def test_admin_can_return_any_borrowing(make_book, auth, admin_auth):
    book = make_book()
    borrowing = lifecycle.borrow(auth, book.id)
    lifecycle.return_book(admin_auth, borrowing.id)
    assert available(book.id) == 1


def test_return_unknown_borrowing(auth):
    with pytest.raises(errors.NotFound):
        lifecycle.return_book(auth, 12345)


def test_renewal_limit(make_book, auth):
    book = make_book()
    borrowing = lifecycle.borrow(auth, book.id, now=NOW)

    first = lifecycle.renew(auth, borrowing.id, now=NOW)
    assert first.renewal_count == 1
    assert first.due_date == date(2024, 1, 29)
    assert first.renewal_requested is True
    assert first.last_renewal_date == NOW

    second = lifecycle.renew(auth, borrowing.id, now=NOW)
    assert second.renewal_count == 2
    assert second.due_date == date(2024, 2, 12)

    with pytest.raises(errors.RenewalLimitReached):
        lifecycle.renew(auth, borrowing.id, now=NOW)
    assert db.session.get(Borrowing, borrowing.id).renewal_count == 2


def test_renew_does_not_touch_inventory(make_book, auth):
    book = make_book(copies=2)
    borrowing = lifecycle.borrow(auth, book.id)
    lifecycle.renew(auth, borrowing.id, extension_days=7)
    assert available(book.id) == 1


def test_renew_emits_renewal_approved(make_book, auth):
    book = make_book()
    borrowing = lifecycle.borrow(auth, book.id, now=NOW)
    lifecycle.renew(auth, borrowing.id, now=NOW)

    entry = NotificationLog.query.filter_by(borrowing_id=borrowing.id).one()
    assert entry.notification_type == 'renewal_approved'
    assert 'January 29, 2024' in entry.message


def test_renewal_survives_failed_notice(make_book, auth, monkeypatch):
    book = make_book()
    borrowing = lifecycle.borrow(auth, book.id, now=NOW)

    def locked(borrowing_id, notification_type, now=None):
        raise OperationalError('INSERT INTO notification_logs ...', {}, Exception('database is locked'))

    monkeypatch.setattr(notifications.get_dispatcher(), 'dispatch', locked)
    renewed = lifecycle.renew(auth, borrowing.id, now=NOW)

    assert renewed.renewal_count == 1
    assert db.session.get(Borrowing, borrowing.id).due_date == date(2024, 1, 29)
    assert NotificationLog.query.count() == 0


def test_cannot_renew_returned_borrowing(make_book, auth):
    book = make_book()
    borrowing = lifecycle.borrow(auth, book.id)
    lifecycle.return_book(auth, borrowing.id)
    with pytest.raises(errors.NotBorrowed):
        lifecycle.renew(auth, borrowing.id)


def test_admin_listing_puts_overdue_first(make_book, auth):
    books = [make_book('Book %d' % i) for i in range(4)]
    older_overdue = lifecycle.borrow(auth, books[0].id, now=datetime(2023, 12, 20))
    newer_overdue = lifecycle.borrow(auth, books[1].id, now=datetime(2024, 1, 1))
    current = lifecycle.borrow(auth, books[2].id, now=datetime(2024, 1, 20))
    returned = lifecycle.borrow(auth, books[3].id, now=datetime(2024, 1, 10))
    lifecycle.return_book(auth, returned.id, now=datetime(2024, 1, 12))

    ordered = lifecycle.list_borrowings(today=date(2024, 2, 1))
    assert [b.id for b in ordered] == [newer_overdue.id, older_overdue.id, current.id, returned.id]
    assert ordered[0].to_dict(date(2024, 2, 1))['display_status'] == 'overdue'
    assert ordered[0].to_dict(date(2024, 2, 1))['days_overdue'] == 17


def test_edit_borrowing_requires_admin(make_book, auth, admin_auth):
    book = make_book()
    borrowing = lifecycle.borrow(auth, book.id, now=NOW)

    with pytest.raises(errors.Unauthorized):
        lifecycle.edit_borrowing(auth, borrowing.id, notes='mine now')

    edited = lifecycle.edit_borrowing(admin_auth, borrowing.id, due_date='2024-03-01', notes='lost cover')
    assert edited.due_date == date(2024, 3, 1)
    assert edited.notes == 'lost cover'
    assert edited.status == BORROWED


def test_edit_borrowing_rejects_bad_date(make_book, auth, admin_auth):
    book = make_book()
    borrowing = lifecycle.borrow(auth, book.id)
    with pytest.raises(errors.InvalidRequest):
        lifecycle.edit_borrowing(admin_auth, borrowing.id, due_date='next week')
    with pytest.raises(errors.InvalidRequest):
        lifecycle.edit_borrowing(admin_auth, borrowing.id)


def test_user_stats(make_book, auth, user):
    first, second = make_book('One'), make_book('Two')
    late = lifecycle.borrow(auth, first.id, now=NOW)
    lifecycle.return_book(auth, late.id, now=NOW + timedelta(days=17))
    lifecycle.borrow(auth, second.id, now=NOW)

    stats = lifecycle.user_stats(user.id, today=date(2024, 2, 1))
    assert stats == {
        'total_borrowed': 2,
        'currently_borrowed': 1,
        'overdue': 1,
        'total_fines': '3.00',
    }


def test_due_soon(make_book, auth):
    today = date.today()
    soon = make_book('Soon')
    later = make_book('Later')
    due = lifecycle.borrow(auth, soon.id, loan_days=1)
    lifecycle.borrow(auth, later.id, loan_days=30)

    assert [b.id for b in lifecycle.due_soon(auth, days=2, today=today)] == [due.id]


def test_library_stats(make_book, auth, user):
    book = make_book(copies=2)
    lifecycle.borrow(auth, book.id, now=NOW)

    stats = lifecycle.library_stats(today=date(2024, 2, 1))
    assert stats['total_users'] == 1
    assert stats['total_books'] == 1
    assert stats['active_borrowings'] == 1
    assert stats['overdue_books'] == 1
    assert stats['returned_books'] == 0
    assert len(stats['recent_activity']) == 1
    assert stats['overdue_details'][0]['book_title'] == 'Dune'
