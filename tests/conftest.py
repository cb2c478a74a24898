import os

os.environ['LIBRARY_DATABASE_URI'] = 'sqlite://'
os.environ['LIBRARY_SECRET_KEY'] = 'test-secret'

from decimal import Decimal

import pytest

from app import app as flask_app
from models import db, User, Admin
from lifecycle import AuthContext
import ledger


@pytest.fixture
def app(tmp_path):
    flask_app.config.update(
        TESTING=True,
        FINE_PER_DAY=Decimal('1.00'),
        UPLOAD_FOLDER=str(tmp_path / 'photos'),
    )
    with flask_app.app_context():
        db.create_all()
        yield flask_app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_user(app):
    def make(name='Alice', email=None, password='secret123', **fields):
        user = User(name=name, email=email or '%s@example.com' % name.lower(), **fields)
        user.set_password(password)
        db.session.add(user)
        db.session.commit()
        return user
    return make


@pytest.fixture
def make_book(app):
    def make(title='Dune', copies=1, **fields):
        fields.setdefault('authors', ['Frank Herbert'])
        book = ledger.create_book(title, total_copies=copies, **fields)
        db.session.commit()
        return book
    return make


@pytest.fixture
def user(make_user):
    return make_user()


@pytest.fixture
def auth(user):
    return AuthContext.for_user(user)


@pytest.fixture
def admin(app):
    admin = Admin(name='Root', email='admin@example.com', role='admin')
    admin.set_password('adminpass')
    db.session.add(admin)
    db.session.commit()
    return admin


@pytest.fixture
def admin_auth(admin):
    return AuthContext.for_admin(admin)


@pytest.fixture
def login(client):
    def do(email='alice@example.com', password='secret123'):
        return client.post('/api/auth/login', json={'email': email, 'password': password})
    return do


@pytest.fixture
def admin_login(client, admin):
    def do():
        return client.post('/api/admin/login',
                           json={'email': 'admin@example.com', 'password': 'adminpass'})
    return do
