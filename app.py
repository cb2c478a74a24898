from functools import wraps
from datetime import date, datetime, timedelta
import os
import re

import click
from flask import Flask, jsonify, request, session, g
from flask_login import LoginManager, login_user, logout_user, login_required, current_user
from werkzeug.exceptions import HTTPException
from werkzeug.utils import secure_filename

from config import Config
from models import db, User, Admin, Book, Borrowing
from policy import BORROWED
from lifecycle import AuthContext
import catalog
import errors
import ledger
import lifecycle
import notifications

app = Flask(__name__)
app.config.from_object(Config)
db.init_app(app)
notifications.init_app(app)

login_manager = LoginManager(app)

ALLOWED_EXTENSIONS = {'png', 'jpg', 'jpeg', 'gif'}
EMAIL_RE = re.compile(r'^[^@\s]+@[^@\s]+\.[^@\s]+$')


@login_manager.user_loader
def load_user(user_id):
    user = db.session.get(User, int(user_id))
    if user is None or not user.is_active:
        return None
    return user


@login_manager.unauthorized_handler
def unauthorized():
    return jsonify(errors.Unauthorized().to_dict()), 401


@app.errorhandler(errors.LibraryError)
def library_error(exc):
    if exc.status_code >= 500:
        app.logger.error('%s: %s', exc.code, exc.message)
    return jsonify(exc.to_dict()), exc.status_code


@app.errorhandler(HTTPException)
def http_error(exc):
    return jsonify({'error': exc.description, 'code': exc.name.lower().replace(' ', '_')}), exc.code


def init_db(admin_email='admin@admin.com', admin_password='admin123'):
    db.create_all()
    if not Admin.query.filter_by(email=admin_email).first():
        admin = Admin(name='Administrator', email=admin_email, role='admin', is_active=True)
        admin.set_password(admin_password)
        db.session.add(admin)
    db.session.commit()


# ---- helpers ----

def payload():
    data = request.get_json(silent=True)
    if data is None:
        data = request.form.to_dict()
    if not isinstance(data, dict):
        raise errors.InvalidRequest('Invalid JSON data')
    return data


def require_fields(data, *fields):
    missing = [f for f in fields if not data.get(f)]
    if missing:
        raise errors.InvalidRequest('Missing required fields: ' + ', '.join(missing))


def flag(value):
    if isinstance(value, str):
        return value.strip().lower() in ('1', 'true', 'yes', 'on')
    return bool(value)


def as_int(value, name):
    try:
        return int(value)
    except (TypeError, ValueError):
        raise errors.InvalidRequest('%s must be an integer' % name)


def as_list(value):
    if value is None:
        return []
    if isinstance(value, str):
        return [v.strip() for v in value.split(',') if v.strip()]
    return list(value)


def allowed_file(filename):
    return '.' in filename and filename.rsplit('.', 1)[1].lower() in ALLOWED_EXTENSIONS


def user_auth():
    return AuthContext.for_user(current_user)


def admin_required(view):
    @wraps(view)
    def wrapped(*args, **kwargs):
        admin_id = session.get('admin_id')
        admin = db.session.get(Admin, admin_id) if admin_id else None
        if admin is None or not admin.is_active:
            raise errors.Unauthorized('Admin authorization required')
        g.admin = admin
        return view(*args, **kwargs)
    return wrapped


def admin_auth():
    return AuthContext.for_admin(g.admin)


def create_user(data):
    require_fields(data, 'name', 'email', 'password')
    email = data['email'].strip().lower()
    if not EMAIL_RE.match(email):
        raise errors.InvalidRequest('Invalid email format')
    if User.query.filter_by(email=email).first():
        raise errors.EmailTaken()
    user = User(
        name=data['name'],
        email=email,
        phone=data.get('phone') or None,
        is_active=True,
        email_notifications=flag(data.get('email_notifications', True)),
        sms_notifications=flag(data.get('sms_notifications', False)),
    )
    user.set_password(data['password'])
    db.session.add(user)
    db.session.commit()
    app.logger.info('registered user %s', user.id)
    return user


def borrowing_row(borrowing, today=None):
    row = borrowing.to_dict(today)
    row['user_name'] = borrowing.user.name
    row['user_email'] = borrowing.user.email
    row['authors'] = list(borrowing.book.authors or [])
    row['cover_url'] = borrowing.book.cover_url
    return row


# ---- auth ----

@app.route('/api/auth/register', methods=['POST'])
def register():
    user = create_user(payload())
    return jsonify({'success': True, 'message': 'Registration successful', 'user_id': user.id}), 201


@app.route('/api/auth/login', methods=['POST'])
def login():
    data = payload()
    require_fields(data, 'email', 'password')
    user = User.query.filter_by(email=data['email'].strip().lower()).first()
    if user is None or not user.check_password(data['password']):
        raise errors.Unauthorized('Invalid credentials')
    if not user.is_active:
        raise errors.AccountInactive()
    login_user(user)
    app.logger.info('user %s logged in', user.id)
    return jsonify({'success': True, 'user': user.to_dict()})


@app.route('/api/auth/logout', methods=['POST'])
def logout():
    logout_user()
    return jsonify({'success': True})


@app.route('/api/auth/whoami')
def whoami():
    out = {'user': None, 'admin': None}
    if current_user.is_authenticated:
        out['user'] = current_user.to_dict()
    admin_id = session.get('admin_id')
    if admin_id:
        admin = db.session.get(Admin, admin_id)
        out['admin'] = admin.to_dict() if admin else None
    return jsonify(out)


# ---- catalog ----

@app.route('/api/books/search')
def search_books():
    query = request.args.get('q') or request.args.get('query')
    start = request.args.get('startIndex', 0, type=int)
    limit = request.args.get('maxResults', 20, type=int)
    entries, total = catalog.search(query, start, limit)
    return jsonify({'success': True, 'books': [e._asdict() for e in entries], 'total': total})


@app.route('/api/books/trending')
def trending_books():
    limit = request.args.get('maxResults', 20, type=int)
    entries, total = catalog.trending(limit)
    return jsonify({'success': True, 'books': [e._asdict() for e in entries], 'total': total})


@app.route('/api/books/<google_book_id>')
def book_details(google_book_id):
    entry = catalog.fetch(google_book_id)
    return jsonify(dict(success=True, **entry._asdict()))


# ---- borrowing ----

@app.route('/api/borrowings', methods=['GET'])
@login_required
def my_borrowings():
    today = date.today()
    return jsonify([b.to_dict(today) for b in lifecycle.user_borrowings(user_auth())])


@app.route('/api/borrowings', methods=['POST'])
@login_required
def borrow_book():
    data = payload()
    if data.get('book_id'):
        book_id = as_int(data['book_id'], 'book_id')
    elif data.get('google_book_id'):
        book_id = catalog.materialize_book(data['google_book_id']).id
    else:
        raise errors.InvalidRequest('book_id or google_book_id is required')
    duration = data.get('duration')
    if duration is not None:
        duration = as_int(duration, 'duration')
    borrowing = lifecycle.borrow(user_auth(), book_id, duration)
    return jsonify({
        'message': 'Book borrowed successfully',
        'borrowing_id': borrowing.id,
        'due_date': borrowing.due_date.isoformat(),
        'book': borrowing.book.to_dict(),
    }), 201


@app.route('/api/borrowings/<int:borrowing_id>/return', methods=['POST'])
@login_required
def return_book(borrowing_id):
    receipt = lifecycle.return_book(user_auth(), borrowing_id)
    return jsonify({
        'success': True,
        'message': 'Book returned successfully',
        'fine_amount': str(receipt.fine_amount),
        'overdue_days': receipt.overdue_days,
    })


@app.route('/api/borrowings/<int:borrowing_id>/renew', methods=['POST'])
@login_required
def renew_book(borrowing_id):
    borrowing = lifecycle.renew(user_auth(), borrowing_id)
    return jsonify({
        'success': True,
        'message': 'Book renewed successfully',
        'new_due_date': borrowing.due_date.isoformat(),
        'renewal_count': borrowing.renewal_count,
    })


# ---- profile ----

@app.route('/api/profile', methods=['GET'])
@login_required
def profile():
    return jsonify(current_user.to_dict())


@app.route('/api/profile', methods=['PUT', 'POST'])
@login_required
def update_profile():
    data = payload()
    if data.get('name'):
        current_user.name = data['name']
    if 'phone' in data:
        current_user.phone = data['phone'] or None
    if 'email_notifications' in data:
        current_user.email_notifications = flag(data['email_notifications'])
    if 'sms_notifications' in data:
        current_user.sms_notifications = flag(data['sms_notifications'])
    db.session.commit()
    return jsonify({'success': True, 'user': current_user.to_dict()})


@app.route('/api/profile/password', methods=['POST'])
@login_required
def change_password():
    data = payload()
    require_fields(data, 'current_password', 'new_password')
    if not current_user.check_password(data['current_password']):
        raise errors.InvalidRequest('Current password is incorrect')
    if len(data['new_password']) < 6:
        raise errors.InvalidRequest('New password must be at least 6 characters')
    current_user.set_password(data['new_password'])
    db.session.commit()
    return jsonify({'success': True, 'message': 'Password changed successfully'})


@app.route('/api/profile/photo', methods=['POST'])
@login_required
def upload_photo():
    file = request.files.get('photo')
    if file is None or not file.filename:
        raise errors.InvalidRequest('No file uploaded')
    if not allowed_file(file.filename):
        raise errors.InvalidRequest('Only png, jpg, jpeg and gif images are allowed')
    folder = app.config['UPLOAD_FOLDER']
    os.makedirs(folder, exist_ok=True)
    filename = secure_filename('user_%s_%s' % (current_user.id, file.filename))
    file.save(os.path.join(folder, filename))
    current_user.profile_photo = filename
    db.session.commit()
    return jsonify({'success': True, 'profile_photo': filename})


@app.route('/api/profile/stats')
@login_required
def profile_stats():
    return jsonify(lifecycle.user_stats(current_user.id))


@app.route('/api/profile/notifications')
@login_required
def profile_notifications():
    return jsonify([n.to_dict() for n in notifications.notifications_for(current_user.id)])


@app.route('/api/profile/due-soon')
@login_required
def profile_due_soon():
    days = request.args.get('days', type=int)
    return jsonify([b.to_dict() for b in lifecycle.due_soon(user_auth(), days)])


# ---- admin ----

@app.route('/api/admin/login', methods=['POST'])
def admin_login():
    data = payload()
    require_fields(data, 'email', 'password')
    admin = Admin.query.filter_by(email=data['email'].strip().lower(), is_active=True).first()
    if admin is None or not admin.check_password(data['password']):
        raise errors.Unauthorized('Invalid admin credentials')
    session['admin_id'] = admin.id
    app.logger.info('admin %s logged in', admin.id)
    return jsonify({'message': 'Admin login successful', 'admin': admin.to_dict()})


@app.route('/api/admin/logout', methods=['POST'])
def admin_logout():
    session.pop('admin_id', None)
    return jsonify({'success': True})


@app.route('/api/admin/stats')
@admin_required
def admin_stats():
    return jsonify(lifecycle.library_stats())


@app.route('/api/admin/users', methods=['GET'])
@admin_required
def admin_users():
    users = User.query.order_by(User.created_at.desc(), User.id.desc()).all()
    return jsonify([u.to_dict() for u in users])


@app.route('/api/admin/users', methods=['POST'])
@admin_required
def admin_create_user():
    user = create_user(payload())
    return jsonify({'message': 'User created', 'id': user.id}), 201


@app.route('/api/admin/users/<int:user_id>', methods=['PUT'])
@admin_required
def admin_update_user(user_id):
    user = db.get_or_404(User, user_id)
    data = payload()
    changed = False
    if data.get('email'):
        email = data['email'].strip().lower()
        if not EMAIL_RE.match(email):
            raise errors.InvalidRequest('Invalid email format')
        taken = User.query.filter(User.email == email, User.id != user.id).first()
        if taken:
            raise errors.EmailTaken()
        user.email = email
        changed = True
    if data.get('name'):
        user.name = data['name']
        changed = True
    if 'phone' in data:
        user.phone = data['phone'] or None
        changed = True
    if 'is_active' in data:
        user.is_active = flag(data['is_active'])
        changed = True
    if not changed:
        raise errors.InvalidRequest('No fields to update')
    db.session.commit()
    return jsonify({'message': 'User updated', 'user': user.to_dict()})


@app.route('/api/admin/users/<int:user_id>', methods=['DELETE'])
@admin_required
def admin_deactivate_user(user_id):
    user = db.get_or_404(User, user_id)
    user.is_active = False
    db.session.commit()
    app.logger.info('admin %s deactivated user %s', g.admin.id, user.id)
    return jsonify({'message': 'User deactivated'})


@app.route('/api/admin/users/<int:user_id>/reminder', methods=['POST'])
@admin_required
def admin_send_reminder(user_id):
    user, overdue, entries = notifications.send_overdue_reminders(user_id)
    return jsonify({
        'success': True,
        'message': 'Reminder sent successfully',
        'user_name': user.name,
        'user_email': user.email,
        'overdue_count': len(overdue),
        'books': [b.to_dict() for b in overdue],
        'notifications': [n.to_dict() for n in entries],
    })


@app.route('/api/admin/users/<int:user_id>/notifications')
@admin_required
def admin_user_notifications(user_id):
    db.get_or_404(User, user_id)
    return jsonify([n.to_dict() for n in notifications.notifications_for(user_id)])


@app.route('/api/admin/books', methods=['GET'])
@admin_required
def admin_books():
    rows = db.session.query(
        Book,
        db.func.count(Borrowing.id),
        db.func.count(db.case((Borrowing.status == BORROWED, 1))),
    ).outerjoin(Book.borrowings).group_by(Book.id).order_by(
        Book.created_at.desc(), Book.id.desc()
    ).all()
    out = []
    for book, total_borrowed, currently_borrowed in rows:
        row = book.to_dict()
        row['total_borrowed'] = total_borrowed
        row['currently_borrowed'] = currently_borrowed
        out.append(row)
    return jsonify(out)


BOOK_FIELDS = ('google_book_id', 'isbn', 'cover_url', 'description', 'language',
               'preview_link', 'info_link')


def book_fields(data):
    fields = {f: data[f] for f in BOOK_FIELDS if f in data}
    for f in ('authors', 'categories'):
        if f in data:
            fields[f] = as_list(data[f])
    for f in ('page_count', 'published_year'):
        if data.get(f) is not None:
            fields[f] = as_int(data[f], f)
    return fields


@app.route('/api/admin/books', methods=['POST'])
@admin_required
def admin_create_book():
    data = payload()
    require_fields(data, 'title')
    if 'available_copies' in data:
        raise errors.InvalidRequest('available_copies is derived from total_copies')
    fields = book_fields(data)
    fields.setdefault('authors', [])
    fields.setdefault('categories', [])
    with lifecycle.transaction(integrity_errors=ledger.DUPLICATE_BOOK):
        book = ledger.create_book(data['title'], data.get('total_copies', 1), **fields)
    return jsonify({'message': 'Book added', 'id': book.id, 'book': book.to_dict()}), 201


@app.route('/api/admin/books/<int:book_id>', methods=['PUT'])
@admin_required
def admin_update_book(book_id):
    data = payload()
    if 'available_copies' in data:
        raise errors.InvalidRequest('available_copies is derived from total_copies')
    book = db.get_or_404(Book, book_id)
    with lifecycle.transaction(integrity_errors=ledger.DUPLICATE_BOOK):
        fields = book_fields(data)
        if data.get('title'):
            fields['title'] = data['title']
        if not fields and 'total_copies' not in data:
            raise errors.InvalidRequest('No fields to update')
        for name, value in fields.items():
            setattr(book, name, value)
        if 'total_copies' in data:
            ledger.adjust_total_copies(book.id, data['total_copies'])
    return jsonify({'message': 'Book updated', 'book': book.to_dict()})


@app.route('/api/admin/books/<int:book_id>', methods=['DELETE'])
@admin_required
def admin_delete_book(book_id):
    book = db.get_or_404(Book, book_id)
    if Borrowing.query.filter_by(book_id=book.id).first():
        raise errors.BookInUse()
    db.session.delete(book)
    db.session.commit()
    return jsonify({'message': 'Book deleted'})


@app.route('/api/admin/borrowings', methods=['GET'])
@admin_required
def admin_borrowings():
    today = date.today()
    return jsonify([borrowing_row(b, today) for b in lifecycle.list_borrowings(today)])


@app.route('/api/admin/borrowings/<int:borrowing_id>', methods=['PUT'])
@admin_required
def admin_edit_borrowing(borrowing_id):
    data = payload()
    if 'status' in data:
        raise errors.InvalidRequest('Use the return endpoint to change status')
    borrowing = lifecycle.edit_borrowing(
        admin_auth(), borrowing_id, due_date=data.get('due_date'), notes=data.get('notes')
    )
    return jsonify({'success': True, 'message': 'Borrowing updated successfully',
                    'borrowing': borrowing_row(borrowing)})


@app.route('/api/admin/borrowings/<int:borrowing_id>/return', methods=['POST'])
@admin_required
def admin_return_book(borrowing_id):
    receipt = lifecycle.return_book(admin_auth(), borrowing_id)
    return jsonify({
        'message': 'Book returned successfully',
        'fine_amount': str(receipt.fine_amount),
        'overdue_days': receipt.overdue_days,
    })


@app.route('/api/admin/borrowings/<int:borrowing_id>/renew', methods=['POST'])
@admin_required
def admin_renew_book(borrowing_id):
    borrowing = lifecycle.renew(admin_auth(), borrowing_id)
    return jsonify({
        'success': True,
        'message': 'Book renewed successfully',
        'new_due_date': borrowing.due_date.isoformat(),
        'renewal_count': borrowing.renewal_count,
    })


# ---- cli ----

@app.cli.command('init-db')
def init_db_command():
    """Create tables and the default administrator."""
    init_db()
    click.echo('Database initialised.')


@app.cli.command('create-admin')
@click.option('--name', default='Administrator')
@click.option('--email', prompt=True)
@click.option('--password', prompt=True, hide_input=True, confirmation_prompt=True)
def create_admin_command(name, email, password):
    email = email.strip().lower()
    if Admin.query.filter_by(email=email).first():
        click.echo('Admin user already exists!')
        return
    admin = Admin(name=name, email=email, role='admin', is_active=True)
    admin.set_password(password)
    db.session.add(admin)
    db.session.commit()
    click.echo('Admin user created successfully!')


@app.cli.command('seed-demo')
def seed_demo_command():
    """Add a demo user, two books and an overdue loan."""
    db.create_all()
    user = User.query.filter_by(email='demo.user@example.com').first()
    if user is None:
        user = User(name='Demo User', email='demo.user@example.com')
        user.set_password('demopass123')
        db.session.add(user)
        db.session.commit()
    if Book.query.count() == 0:
        ledger.create_book('The Pragmatic Programmer', total_copies=3,
                           authors=['Andrew Hunt', 'David Thomas'], isbn='9780201616224',
                           categories=['Computers'])
        ledger.create_book('Clean Code', total_copies=2, authors=['Robert C. Martin'],
                           isbn='9780132350884', categories=['Computers'])
        db.session.commit()
    book = Book.query.order_by(Book.id).first()
    if not Borrowing.query.filter_by(user_id=user.id, book_id=book.id, status=BORROWED).first():
        lifecycle.borrow(AuthContext.for_user(user), book.id,
                         now=datetime.now() - timedelta(days=20))
    click.echo('Demo data ready (demo.user@example.com / demopass123).')


@app.cli.command('send-due-notifications')
def send_due_notifications_command():
    """Notify borrowers whose books are due soon or overdue."""
    entries = notifications.dispatch_due_notifications()
    click.echo('%d notifications dispatched.' % len(entries))


if __name__ == '__main__':
    with app.app_context():
        init_db()
    app.run(debug=True)
