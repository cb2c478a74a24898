"""Borrowing lifecycle: borrow, return, renew.

A borrowing is created ``borrowed`` and ends ``returned``. Overdue is never
stored; it is derived from the due date whenever a borrowing is read.
Every operation is one transaction and receives the caller's identity as an
:class:`AuthContext` instead of reading the session.
"""
import logging
from collections import namedtuple
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Optional

from flask import current_app
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError

from models import db, User, Book, Borrowing
from policy import BORROWED, RETURNED
import errors
import ledger
import notifications
import policy

log = logging.getLogger(__name__)

ReturnReceipt = namedtuple('ReturnReceipt', 'borrowing fine_amount overdue_days')

# the partial index shows up by column list on sqlite and by name on postgres
ACTIVE_LOAN = {
    'uq_borrowings_active': errors.AlreadyBorrowed,
    'borrowings.user_id, borrowings.book_id': errors.AlreadyBorrowed,
}


@dataclass(frozen=True)
class AuthContext:
    user_id: Optional[int] = None
    admin_id: Optional[int] = None
    is_active: bool = True
    role: Optional[str] = None

    @property
    def is_admin(self):
        return self.admin_id is not None

    @classmethod
    def for_user(cls, user):
        return cls(user_id=user.id, is_active=user.is_active, role='user')

    @classmethod
    def for_admin(cls, admin):
        return cls(admin_id=admin.id, is_active=admin.is_active, role=admin.role)


@contextmanager
def transaction(integrity_errors=None):
    """Commit on success, roll back on any error.

    ``integrity_errors`` maps a constraint name (as it appears in the driver
    message) to the :class:`errors.LibraryError` it stands for. Integrity
    errors from any other constraint are re-raised untouched.
    """
    try:
        yield db.session
        db.session.commit()
    except errors.LibraryError:
        db.session.rollback()
        raise
    except IntegrityError as exc:
        db.session.rollback()
        detail = str(exc.orig)
        for constraint, error in (integrity_errors or {}).items():
            if constraint in detail:
                log.warning('integrity error mapped to %s: %s', error.__name__, detail)
                raise error() from exc
        raise
    except OperationalError as exc:
        db.session.rollback()
        log.warning('database busy: %s', exc.orig)
        raise errors.Busy() from exc
    except SQLAlchemyError:
        db.session.rollback()
        raise


def _require_user(auth):
    if auth.user_id is None:
        raise errors.Unauthorized()
    user = db.session.get(User, auth.user_id)
    if user is None:
        raise errors.NotFound('User not found')
    if not user.is_active or not auth.is_active:
        raise errors.AccountInactive()
    return user


def _require_actor(auth):
    if auth.is_admin:
        if not auth.is_active:
            raise errors.AccountInactive()
        return
    _require_user(auth)


def _require_admin(auth):
    if not auth.is_admin:
        raise errors.Unauthorized('Admin authorization required')
    if not auth.is_active:
        raise errors.AccountInactive()


def _borrowing_for(auth, borrowing_id, lock=False):
    query = Borrowing.query.filter_by(id=borrowing_id)
    if lock:
        query = query.with_for_update()
    borrowing = query.first()
    # other users' loans look the same as missing ones
    if borrowing is None or (not auth.is_admin and borrowing.user_id != auth.user_id):
        raise errors.NotFound('Borrowing not found')
    return borrowing


def _positive_days(value, name):
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise errors.InvalidRequest('%s must be a positive number of days' % name)
    return value


def borrow(auth, book_id, loan_days=None, now=None):
    if loan_days is None:
        loan_days = current_app.config['LOAN_DAYS']
    loan_days = _positive_days(loan_days, 'duration')
    now = now or datetime.now()

    with transaction(integrity_errors=ACTIVE_LOAN):
        user = _require_user(auth)
        active = Borrowing.query.filter_by(
            user_id=user.id, book_id=book_id, status=BORROWED
        ).first()
        if active is not None:
            raise errors.AlreadyBorrowed()
        ledger.reserve_copy(book_id)
        borrowing = Borrowing(
            user_id=user.id,
            book_id=book_id,
            status=BORROWED,
            borrowed_at=now,
            due_date=now.date() + timedelta(days=loan_days),
            fine_amount=Decimal('0.00'),
            renewal_count=0,
        )
        db.session.add(borrowing)
        db.session.flush()

    log.info('user %s borrowed book %s (borrowing %s, due %s)',
             borrowing.user_id, borrowing.book_id, borrowing.id, borrowing.due_date)
    return borrowing


def return_book(auth, borrowing_id, now=None):
    now = now or datetime.now()
    rate = current_app.config['FINE_PER_DAY']

    with transaction():
        _require_actor(auth)
        borrowing = _borrowing_for(auth, borrowing_id, lock=True)
        if borrowing.status != BORROWED:
            raise errors.NotBorrowed('Book already returned')
        overdue_days = policy.days_overdue(borrowing.due_date, now)
        fine = policy.compute_fine(borrowing.due_date, now, rate)
        # a concurrent return loses here instead of releasing a second copy
        updated = Borrowing.query.filter_by(id=borrowing.id, status=BORROWED).update(
            {
                Borrowing.status: RETURNED,
                Borrowing.returned_at: now,
                Borrowing.fine_amount: fine,
            },
            synchronize_session=False,
        )
        if updated != 1:
            raise errors.NotBorrowed('Book already returned')
        ledger.release_copy(borrowing.book_id)
        db.session.refresh(borrowing)

    log.info('borrowing %s returned, %s days overdue, fine %s', borrowing.id, overdue_days, fine)
    return ReturnReceipt(borrowing, fine, overdue_days)


def renew(auth, borrowing_id, extension_days=None, now=None):
    config = current_app.config
    if extension_days is None:
        extension_days = config['RENEWAL_DAYS']
    extension_days = _positive_days(extension_days, 'extension')
    max_renewals = config['MAX_RENEWALS']
    now = now or datetime.now()

    with transaction():
        _require_actor(auth)
        borrowing = _borrowing_for(auth, borrowing_id, lock=True)
        if borrowing.status != BORROWED:
            raise errors.NotBorrowed()
        if not policy.can_renew(borrowing.renewal_count, max_renewals):
            raise errors.RenewalLimitReached()
        updated = Borrowing.query.filter(
            Borrowing.id == borrowing.id,
            Borrowing.status == BORROWED,
            Borrowing.renewal_count == borrowing.renewal_count,
        ).update(
            {
                Borrowing.due_date: borrowing.due_date + timedelta(days=extension_days),
                Borrowing.renewal_count: Borrowing.renewal_count + 1,
                Borrowing.renewal_requested: True,
                Borrowing.last_renewal_date: now,
            },
            synchronize_session=False,
        )
        if updated != 1:
            raise errors.Busy('Borrowing changed concurrently, please retry')
        db.session.refresh(borrowing)

    log.info('borrowing %s renewed (%s/%s), due %s',
             borrowing.id, borrowing.renewal_count, max_renewals, borrowing.due_date)
    try:
        notifications.get_dispatcher().renewal_approved(borrowing.id, now=now)
    except SQLAlchemyError:
        # the renewal is already committed
        db.session.rollback()
        log.exception('renewal notice for borrowing %s failed', borrowing.id)
    return borrowing


def edit_borrowing(auth, borrowing_id, due_date=None, notes=None):
    """Admin correction of a loan's due date or notes.

    Status only moves through :func:`return_book`.
    """
    if due_date is None and notes is None:
        raise errors.InvalidRequest('No fields to update')
    if isinstance(due_date, str):
        try:
            due_date = date.fromisoformat(due_date)
        except ValueError:
            raise errors.InvalidRequest('due_date must be YYYY-MM-DD')

    with transaction():
        _require_admin(auth)
        borrowing = _borrowing_for(auth, borrowing_id, lock=True)
        if due_date is not None:
            if borrowing.status != BORROWED:
                raise errors.NotBorrowed('Due date can only change on an active borrowing')
            borrowing.due_date = due_date
        if notes is not None:
            borrowing.notes = notes

    log.info('borrowing %s edited by admin %s', borrowing.id, auth.admin_id)
    return borrowing


# ---- reads ----

def _overdue_clause(today):
    return db.and_(Borrowing.status == BORROWED, Borrowing.due_date < today)


def list_borrowings(today=None):
    """All borrowings for the admin dashboard, overdue ones first."""
    today = today or date.today()
    return Borrowing.query.order_by(
        db.case((_overdue_clause(today), 0), else_=1),
        Borrowing.borrowed_at.desc(),
        Borrowing.id.desc(),
    ).all()


def user_borrowings(auth):
    user = _require_user(auth)
    return Borrowing.query.filter_by(user_id=user.id).order_by(
        Borrowing.borrowed_at.desc(), Borrowing.id.desc()
    ).all()


def overdue_borrowings(user_id=None, today=None):
    today = today or date.today()
    query = Borrowing.query.filter(_overdue_clause(today))
    if user_id is not None:
        query = query.filter(Borrowing.user_id == user_id)
    return query.order_by(Borrowing.due_date.asc()).all()


def due_soon(auth, days=None, today=None):
    user = _require_user(auth)
    today = today or date.today()
    days = current_app.config['DUE_SOON_DAYS'] if days is None else days
    return Borrowing.query.filter(
        Borrowing.user_id == user.id,
        Borrowing.status == BORROWED,
        Borrowing.due_date >= today,
        Borrowing.due_date <= today + timedelta(days=days),
    ).order_by(Borrowing.due_date.asc()).all()


def user_stats(user_id, today=None):
    today = today or date.today()
    base = Borrowing.query.filter_by(user_id=user_id)
    total_fines = db.session.query(
        func.coalesce(func.sum(Borrowing.fine_amount), 0)
    ).filter(Borrowing.user_id == user_id).scalar()
    return {
        'total_borrowed': base.count(),
        'currently_borrowed': base.filter(Borrowing.status == BORROWED).count(),
        'overdue': base.filter(_overdue_clause(today)).count(),
        'total_fines': str(Decimal(total_fines).quantize(policy.CENTS)),
    }


def library_stats(today=None):
    today = today or date.today()
    recent = Borrowing.query.order_by(
        Borrowing.borrowed_at.desc(), Borrowing.id.desc()
    ).limit(10).all()
    return {
        'total_users': User.query.filter_by(is_active=True).count(),
        'total_books': Book.query.count(),
        'total_borrowings': Borrowing.query.count(),
        'active_borrowings': Borrowing.query.filter_by(status=BORROWED).count(),
        'overdue_books': Borrowing.query.filter(_overdue_clause(today)).count(),
        'returned_books': Borrowing.query.filter_by(status=RETURNED).count(),
        'recent_activity': [b.to_dict(today) for b in recent],
        'overdue_details': [b.to_dict(today) for b in overdue_borrowings(today=today)],
    }
