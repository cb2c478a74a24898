"""Google Books lookups."""
import logging
import random
import re
from collections import namedtuple
from urllib.parse import quote

import requests
from flask import current_app
from sqlalchemy.exc import IntegrityError

from models import db, Book
import errors
import ledger

log = logging.getLogger(__name__)

TRENDING_QUERIES = ['bestseller', 'popular', 'fiction', 'romance', 'mystery', 'science fiction']

BookCatalogEntry = namedtuple('BookCatalogEntry', [
    'google_book_id', 'title', 'authors', 'isbn', 'cover_url', 'description',
    'page_count', 'published_year', 'categories', 'language', 'preview_link',
    'info_link',
])


def _request(url, params=None):
    params = dict(params or {})
    key = current_app.config.get('GOOGLE_BOOKS_API_KEY')
    if key:
        params['key'] = key
    try:
        r = requests.get(
            url,
            params=params,
            timeout=current_app.config['CATALOG_TIMEOUT'],
            headers={'User-Agent': 'Versewell Library System'},
        )
    except requests.RequestException as exc:
        log.warning('Google Books request failed: %s', exc)
        raise errors.CatalogUnavailable() from exc
    if r.status_code == 404:
        raise errors.NotFound('Book not found in catalog')
    if r.status_code != 200:
        log.warning('Google Books answered %s for %s', r.status_code, url)
        raise errors.CatalogUnavailable()
    try:
        return r.json()
    except ValueError as exc:
        raise errors.CatalogUnavailable('Invalid book data from Google Books') from exc


def extract_isbn(identifiers):
    for identifier in identifiers or []:
        if identifier.get('type') in ('ISBN_13', 'ISBN_10'):
            return identifier.get('identifier')
    return None


def extract_year(published):
    match = re.search(r'(\d{4})', published or '')
    return int(match.group(1)) if match else None


def entry_from_volume(item):
    info = item.get('volumeInfo', {})
    images = info.get('imageLinks', {})
    return BookCatalogEntry(
        google_book_id=item['id'],
        title=info.get('title', 'Unknown Title'),
        authors=list(info.get('authors', [])),
        isbn=extract_isbn(info.get('industryIdentifiers')),
        cover_url=images.get('thumbnail') or images.get('smallThumbnail') or '',
        description=info.get('description', ''),
        page_count=info.get('pageCount', 0),
        published_year=extract_year(info.get('publishedDate')),
        categories=list(info.get('categories', [])),
        language=info.get('language', 'en'),
        preview_link=info.get('previewLink', ''),
        info_link=info.get('infoLink', ''),
    )


def search(query, start_index=0, max_results=20):
    if not query:
        raise errors.InvalidRequest('Query parameter is required')
    max_results = min(max(int(max_results), 1), 40)
    data = _request(current_app.config['GOOGLE_BOOKS_URL'], {
        'q': query,
        'startIndex': max(int(start_index), 0),
        'maxResults': max_results,
        'printType': 'books',
    })
    entries = [entry_from_volume(item) for item in data.get('items', [])]
    return entries, data.get('totalItems', len(entries))


def trending(max_results=20):
    return search(random.choice(TRENDING_QUERIES), 0, max_results)


def fetch(google_book_id):
    if not google_book_id:
        raise errors.InvalidRequest('Google Book ID is required')
    url = '%s/%s' % (current_app.config['GOOGLE_BOOKS_URL'], quote(google_book_id, safe=''))
    data = _request(url)
    if not data or 'id' not in data:
        raise errors.CatalogUnavailable('Invalid book data from Google Books')
    return entry_from_volume(data)


def materialize_book(google_book_id):
    """Return the local book for a catalog id, importing it with one copy."""
    book = Book.query.filter_by(google_book_id=google_book_id).first()
    if book is not None:
        return book
    entry = fetch(google_book_id)
    fields = entry._asdict()
    title = fields.pop('title')
    try:
        book = ledger.create_book(title, total_copies=1, **fields)
        db.session.commit()
    except IntegrityError:
        # imported by a concurrent request
        db.session.rollback()
        book = Book.query.filter_by(google_book_id=google_book_id).first()
        if book is None:
            raise
    log.info('imported %s as book %s', google_book_id, book.id)
    return book
