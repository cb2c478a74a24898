"""Borrowing notifications.

Lifecycle events are rendered into a message and delivered over the
channels the user opted into. Every attempt is written to
``notification_logs``; the outcome never changes borrowing state.
"""
import logging
from datetime import datetime, timedelta

from flask import current_app

from models import db, User, Borrowing, NotificationLog
from policy import BORROWED
import errors
import policy

log = logging.getLogger(__name__)


def log_email(address, message):
    log.info('email to %s: %s', address, message)
    return True


def log_sms(number, message):
    log.info('sms to %s: %s', number, message)
    return True


def render_message(notification_type, borrowing, today, rate):
    title = borrowing.book.title
    due = borrowing.due_date
    if notification_type == 'due_soon':
        days = max(0, (due - today).days)
        return ("Reminder: Your book '%s' is due in %d days. "
                "Please return it to avoid late fees." % (title, days))
    if notification_type == 'overdue':
        days = policy.days_overdue(due, today)
        fine = policy.compute_fine(due, today, rate)
        return "Your book '%s' is overdue by %d days. Current fine: $%s" % (title, days, fine)
    if notification_type == 'renewal_approved':
        return ("Your renewal request for '%s' has been approved. New due date: %s"
                % (title, due.strftime('%B %d, %Y')))
    if notification_type == 'reminder':
        return "Just a reminder that your book '%s' is due on %s." % (title, due.strftime('%B %d, %Y'))
    return "Notification about your borrowed book: '%s'" % title


class NotificationDispatcher:
    def __init__(self, email_sender=log_email, sms_sender=log_sms):
        self.email_sender = email_sender
        self.sms_sender = sms_sender

    def due_soon(self, borrowing_id, now=None):
        return self.dispatch(borrowing_id, 'due_soon', now)

    def overdue(self, borrowing_id, now=None):
        return self.dispatch(borrowing_id, 'overdue', now)

    def renewal_approved(self, borrowing_id, now=None):
        return self.dispatch(borrowing_id, 'renewal_approved', now)

    def reminder(self, borrowing_id, now=None):
        return self.dispatch(borrowing_id, 'reminder', now)

    def dispatch(self, borrowing_id, notification_type, now=None):
        now = now or datetime.now()
        borrowing = db.session.get(Borrowing, borrowing_id)
        if borrowing is None:
            raise errors.NotFound('Borrowing record not found')
        user = borrowing.user
        message = render_message(
            notification_type, borrowing, now.date(), current_app.config['FINE_PER_DAY']
        )
        entry = NotificationLog(
            user_id=user.id,
            borrowing_id=borrowing.id,
            notification_type=notification_type,
            message=message,
            status='pending',
            created_at=now,
        )
        db.session.add(entry)
        db.session.flush()

        sent = False
        if user.email_notifications:
            sent = self._deliver(self.email_sender, user.email, message) or sent
        if user.sms_notifications and user.phone:
            sent = self._deliver(self.sms_sender, user.phone, message) or sent

        entry.status = 'sent' if sent else 'failed'
        entry.sent_at = now
        db.session.commit()
        log.info('%s notification for borrowing %s: %s', notification_type, borrowing.id, entry.status)
        return entry

    def _deliver(self, sender, address, message):
        try:
            return bool(sender(address, message))
        except Exception:
            log.exception('delivery to %s failed', address)
            return False


def init_app(app, dispatcher=None):
    app.extensions['notifications'] = dispatcher or NotificationDispatcher()


def get_dispatcher():
    return current_app.extensions['notifications']


def already_sent(borrowing_id, notification_type, day):
    start = datetime.combine(day, datetime.min.time())
    return NotificationLog.query.filter(
        NotificationLog.borrowing_id == borrowing_id,
        NotificationLog.notification_type == notification_type,
        NotificationLog.created_at >= start,
        NotificationLog.created_at < start + timedelta(days=1),
    ).first() is not None


def dispatch_due_notifications(now=None):
    """Send due-soon and overdue notices, at most one of each per loan per day."""
    now = now or datetime.now()
    today = now.date()
    dispatcher = get_dispatcher()
    due_on = today + timedelta(days=current_app.config['DUE_SOON_DAYS'])

    due_soon = Borrowing.query.filter(
        Borrowing.status == BORROWED, Borrowing.due_date == due_on
    ).all()
    overdue = Borrowing.query.filter(
        Borrowing.status == BORROWED, Borrowing.due_date < today
    ).all()

    entries = []
    for notification_type, borrowings in (('due_soon', due_soon), ('overdue', overdue)):
        for borrowing in borrowings:
            if already_sent(borrowing.id, notification_type, today):
                continue
            entries.append(dispatcher.dispatch(borrowing.id, notification_type, now))
    return entries


def send_overdue_reminders(user_id, now=None):
    now = now or datetime.now()
    user = User.query.filter_by(id=user_id, is_active=True).first()
    if user is None:
        raise errors.NotFound('User not found')
    overdue = Borrowing.query.filter(
        Borrowing.user_id == user.id,
        Borrowing.status == BORROWED,
        Borrowing.due_date < now.date(),
    ).order_by(Borrowing.due_date.asc()).all()
    if not overdue:
        raise errors.InvalidRequest('No overdue books found for this user')
    dispatcher = get_dispatcher()
    entries = [dispatcher.reminder(borrowing.id, now) for borrowing in overdue]
    log.info('sent %d overdue reminders to user %s', len(entries), user.id)
    return user, overdue, entries


def notifications_for(user_id, limit=20):
    return NotificationLog.query.filter_by(user_id=user_id).order_by(
        NotificationLog.created_at.desc(), NotificationLog.id.desc()
    ).limit(limit).all()
