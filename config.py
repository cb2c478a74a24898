import os
from decimal import Decimal


def env(name, default=None, cast=str):
    value = os.environ.get('LIBRARY_' + name)
    if value is None:
        return default
    return cast(value)


class Config:
    SECRET_KEY = env('SECRET_KEY', 'change-me')
    SQLALCHEMY_DATABASE_URI = env('DATABASE_URI', 'sqlite:///library.db')
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # borrowing rules
    LOAN_DAYS = env('LOAN_DAYS', 14, int)
    RENEWAL_DAYS = env('RENEWAL_DAYS', 14, int)
    MAX_RENEWALS = env('MAX_RENEWALS', 2, int)
    FINE_PER_DAY = env('FINE_PER_DAY', Decimal('0.50'), Decimal)
    DUE_SOON_DAYS = env('DUE_SOON_DAYS', 2, int)

    # Google Books
    GOOGLE_BOOKS_URL = env('GOOGLE_BOOKS_URL', 'https://www.googleapis.com/books/v1/volumes')
    GOOGLE_BOOKS_API_KEY = env('GOOGLE_BOOKS_API_KEY', '')
    CATALOG_TIMEOUT = env('CATALOG_TIMEOUT', 10, int)

    # profile photos
    UPLOAD_FOLDER = env('UPLOAD_FOLDER', 'static/profile_pics')
    MAX_CONTENT_LENGTH = 2 * 1024 * 1024
