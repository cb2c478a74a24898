from datetime import datetime

from flask_sqlalchemy import SQLAlchemy
from flask_login import UserMixin
from werkzeug.security import generate_password_hash, check_password_hash

from policy import BORROWED, days_overdue, is_overdue

db = SQLAlchemy()

NOTIFICATION_TYPES = ('due_soon', 'overdue', 'renewal_approved', 'reminder')


class PasswordMixin:
    def set_password(self, password):
        self.password = generate_password_hash(password)

    def check_password(self, password):
        return check_password_hash(self.password, password)


class User(PasswordMixin, UserMixin, db.Model):
    __tablename__ = 'users'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    email = db.Column(db.String(255), unique=True, nullable=False)
    phone = db.Column(db.String(32))
    password = db.Column(db.String(255), nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    email_notifications = db.Column(db.Boolean, nullable=False, default=True)
    sms_notifications = db.Column(db.Boolean, nullable=False, default=False)
    profile_photo = db.Column(db.String(300))
    created_at = db.Column(db.DateTime, default=datetime.now)
    updated_at = db.Column(db.DateTime, default=datetime.now, onupdate=datetime.now)

    borrowings = db.relationship('Borrowing', backref='user', lazy=True)

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'email': self.email,
            'phone': self.phone,
            'is_active': self.is_active,
            'email_notifications': self.email_notifications,
            'sms_notifications': self.sms_notifications,
            'profile_photo': self.profile_photo,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }


class Admin(PasswordMixin, db.Model):
    __tablename__ = 'admins'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    email = db.Column(db.String(255), unique=True, nullable=False)
    password = db.Column(db.String(255), nullable=False)
    role = db.Column(db.String(40), nullable=False, default='admin')
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, default=datetime.now)

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'email': self.email,
            'role': self.role,
            'is_active': self.is_active,
        }


class Book(db.Model):
    __tablename__ = 'books'
    __table_args__ = (
        db.CheckConstraint('available_copies >= 0', name='ck_books_available_non_negative'),
        db.CheckConstraint('available_copies <= total_copies', name='ck_books_available_le_total'),
    )

    id = db.Column(db.Integer, primary_key=True)
    google_book_id = db.Column(db.String(64), unique=True)
    title = db.Column(db.String(500), nullable=False)
    authors = db.Column(db.JSON, nullable=False, default=list)
    isbn = db.Column(db.String(20))
    cover_url = db.Column(db.String(500))
    description = db.Column(db.Text)
    page_count = db.Column(db.Integer)
    published_year = db.Column(db.Integer)
    categories = db.Column(db.JSON, nullable=False, default=list)
    language = db.Column(db.String(10))
    preview_link = db.Column(db.String(500))
    info_link = db.Column(db.String(500))
    total_copies = db.Column(db.Integer, nullable=False, default=1)
    available_copies = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime, default=datetime.now)

    borrowings = db.relationship('Borrowing', backref='book', lazy=True)

    def to_dict(self):
        return {
            'id': self.id,
            'google_book_id': self.google_book_id,
            'title': self.title,
            'authors': list(self.authors or []),
            'isbn': self.isbn,
            'cover_url': self.cover_url,
            'description': self.description,
            'page_count': self.page_count,
            'published_year': self.published_year,
            'categories': list(self.categories or []),
            'language': self.language,
            'total_copies': self.total_copies,
            'available_copies': self.available_copies,
        }


class Borrowing(db.Model):
    __tablename__ = 'borrowings'
    __table_args__ = (
        # at most one active loan per (user, book)
        db.Index(
            'uq_borrowings_active', 'user_id', 'book_id', unique=True,
            sqlite_where=db.text("status = 'borrowed'"),
            postgresql_where=db.text("status = 'borrowed'"),
        ),
        db.CheckConstraint('fine_amount >= 0', name='ck_borrowings_fine_non_negative'),
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    book_id = db.Column(db.Integer, db.ForeignKey('books.id'), nullable=False)
    status = db.Column(db.String(20), nullable=False, default=BORROWED)
    borrowed_at = db.Column(db.DateTime, nullable=False, default=datetime.now)
    due_date = db.Column(db.Date, nullable=False)
    returned_at = db.Column(db.DateTime)
    fine_amount = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    renewal_count = db.Column(db.Integer, nullable=False, default=0)
    renewal_requested = db.Column(db.Boolean, nullable=False, default=False)
    last_renewal_date = db.Column(db.DateTime)
    notes = db.Column(db.Text)

    def to_dict(self, today=None):
        today = today or datetime.now().date()
        overdue = is_overdue(self.status, self.due_date, today)
        return {
            'id': self.id,
            'user_id': self.user_id,
            'book_id': self.book_id,
            'book_title': self.book.title if self.book else None,
            'status': self.status,
            'display_status': 'overdue' if overdue else self.status,
            'is_overdue': overdue,
            'days_overdue': days_overdue(self.due_date, today) if overdue else 0,
            'borrowed_at': self.borrowed_at.isoformat(),
            'due_date': self.due_date.isoformat(),
            'returned_at': self.returned_at.isoformat() if self.returned_at else None,
            'fine_amount': str(self.fine_amount if self.fine_amount is not None else '0.00'),
            'renewal_count': self.renewal_count,
            'renewal_requested': self.renewal_requested,
            'last_renewal_date': self.last_renewal_date.isoformat() if self.last_renewal_date else None,
            'notes': self.notes,
        }


class NotificationLog(db.Model):
    __tablename__ = 'notification_logs'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    borrowing_id = db.Column(db.Integer, db.ForeignKey('borrowings.id'), nullable=False)
    notification_type = db.Column(db.String(32), nullable=False)
    message = db.Column(db.String(500), nullable=False)
    status = db.Column(db.String(16), nullable=False, default='pending')
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.now)
    sent_at = db.Column(db.DateTime)

    def to_dict(self):
        return {
            'id': self.id,
            'borrowing_id': self.borrowing_id,
            'notification_type': self.notification_type,
            'message': self.message,
            'status': self.status,
            'created_at': self.created_at.isoformat(),
            'sent_at': self.sent_at.isoformat() if self.sent_at else None,
        }
