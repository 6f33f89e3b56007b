"""Shared fixtures: an in-memory Flickr and a cancellation token that never exits."""
import logging

import pytest

import flickrcli
from flickrcli import CancellationToken, FlickrApiError, MediaItem, TransferEngine


class HardAbort(Exception):
    """Stands in for os._exit when the abort threshold is reached."""


class FakeResponse:
    """Streaming response stand-in; on_chunk(index) runs before each chunk is yielded."""

    def __init__(self, body: bytes, content_length=None, on_chunk=None):
        self.body = body
        length = len(body) if content_length is None else content_length
        self.headers = {'Content-Length': str(length)} if length is not False else {}
        self.on_chunk = on_chunk
        self.closed = False

    def iter_content(self, chunk_size):
        for index, offset in enumerate(range(0, len(self.body), chunk_size)):
            if self.on_chunk:
                self.on_chunk(index)
            yield self.body[offset:offset + chunk_size]

    def close(self):
        self.closed = True


class FakeMonitor:
    def __init__(self, total):
        self.len = total
        self.bytes_read = 0


class FakeClient:
    """Just enough of the Flickr API for the walker, engine and commands."""

    def __init__(self, per_page=2):
        self.per_page = per_page
        self.albums = []          # [{'id', 'title', 'photos': [photo ids]}]
        self.infos = {}           # photo id -> getInfo 'photo' payload
        self.not_in_set = []      # photo ids
        self.machine_tags = {}    # photo id -> 'checksum:sha1=...'
        self.bodies = {}          # url -> bytes or FakeResponse
        self.calls = []
        self.streams = []
        self.uploads = []
        self.upload_results = []  # queued upload responses, default is success
        self.errors = {}          # method -> exception to raise
        self.on_upload = None     # called with the upload path before returning
        self._next_set_id = 900
        self._next_photo_id = 5000

    # ---- fixture helpers ----

    def add_album(self, title, photo_ids=(), album_id=None):
        album_id = album_id or str(self._next_set_id)
        self._next_set_id += 1
        self.albums.append({'id': album_id, 'title': title, 'photos': list(photo_ids)})
        return album_id

    def add_photo(self, photo_id, title='', media='photo', fmt='jpg', size=5000,
                  body=None, taken='2020-01-02 03:04:05', lastupdate='1600000500'):
        self.infos[photo_id] = {
            'id': photo_id,
            'secret': f's{photo_id}',
            'server': '65535',
            'farm': 66,
            'originalsecret': f'o{photo_id}',
            'originalformat': fmt,
            'media': media,
            'title': {'_content': title},
            'description': {'_content': 'desc'},
            'license': '4',
            'rotation': 90,
            'dateuploaded': '1600000000',
            'owner': {'nsid': '1@N00', 'username': 'tester', 'realname': 'Test User',
                      'path_alias': 'tester'},
            'visibility': {'ispublic': 0, 'isfriend': 1, 'isfamily': 1},
            'dates': {'posted': '1600000000', 'taken': taken, 'takengranularity': '0',
                      'lastupdate': lastupdate},
            'tags': {'tag': [{'id': 't1', 'raw': 'Summer Trip', '_content': 'summertrip',
                              'machine_tag': 0}]},
        }
        url = MediaItem.from_info({'photo': self.infos[photo_id]}).original_url()
        self.bodies[url] = body if body is not None else bytes(range(256)) * (size // 256) + b'x' * (size % 256)
        return url

    def album_by_title(self, title):
        return next(a for a in self.albums if a['title'] == title)

    def methods(self):
        return [method for method, _ in self.calls]

    # ---- FlickrClient interface ----

    def call(self, method, **params):
        self.calls.append((method, params))
        error = self.errors.get(method)
        if error is not None:
            raise error
        handler = getattr(self, '_' + method[len('flickr.'):].replace('.', '_'))
        return handler(**params)

    def open_stream(self, url):
        self.streams.append(url)
        body = self.bodies[url]
        if isinstance(body, Exception):
            raise body
        if isinstance(body, FakeResponse):
            return body
        return FakeResponse(body)

    def upload(self, path, title='', description='', tags='', callback=None):
        self.uploads.append({'path': path, 'title': title, 'description': description,
                             'tags': tags})
        size = path.stat().st_size
        monitor = FakeMonitor(size + 200)
        for step in (size // 2, size + 200):
            monitor.bytes_read = step
            if callback:
                callback(monitor)
        if self.on_upload:
            self.on_upload(path)
        if self.upload_results:
            return self.upload_results.pop(0)
        photo_id = str(self._next_photo_id)
        self._next_photo_id += 1
        return {'stat': 'ok', 'photoid': photo_id}

    def login(self):
        return {'id': '1@N00', 'username': 'tester'}

    # ---- REST handlers ----

    def _page(self, entries, page):
        per_page = self.per_page
        pages = max(1, -(-len(entries) // per_page))
        start = (int(page) - 1) * per_page
        return entries[start:start + per_page], pages

    def _photo_entry(self, photo_id):
        info = self.infos.get(photo_id, {})
        return {'id': photo_id, 'secret': info.get('secret', ''),
                'title': info.get('title', {}).get('_content', '')}

    def _photosets_getList(self, page=1, per_page=None, **_):
        entries = [{'id': a['id'], 'title': {'_content': a['title']},
                    'photos': len(a['photos']), 'videos': 0} for a in self.albums]
        chunk, pages = self._page(entries, page)
        return {'photosets': {'page': page, 'pages': pages, 'photoset': chunk}, 'stat': 'ok'}

    def _photosets_getPhotos(self, photoset_id, page=1, **_):
        album = next(a for a in self.albums if a['id'] == photoset_id)
        chunk, pages = self._page([self._photo_entry(p) for p in album['photos']], page)
        return {'photoset': {'id': photoset_id, 'page': page, 'pages': pages, 'photo': chunk},
                'stat': 'ok'}

    def _photos_getNotInSet(self, page=1, **_):
        chunk, pages = self._page([self._photo_entry(p) for p in self.not_in_set], page)
        return {'photos': {'page': page, 'pages': pages, 'photo': chunk}, 'stat': 'ok'}

    def _people_getPhotos(self, page=1, **_):
        entries = []
        for photo_id in self.infos:
            entry = self._photo_entry(photo_id)
            entry['machine_tags'] = self.machine_tags.get(photo_id, '')
            entries.append(entry)
        chunk, pages = self._page(entries, page)
        return {'photos': {'page': page, 'pages': pages, 'photo': chunk}, 'stat': 'ok'}

    def _photos_getInfo(self, photo_id, secret=None, **_):
        if photo_id not in self.infos:
            raise FlickrApiError(1, 'Photo not found')
        return {'photo': self.infos[photo_id], 'stat': 'ok'}

    def _photos_getAllContexts(self, photo_id, **_):
        sets = [{'id': a['id'], 'title': a['title']} for a in self.albums
                if photo_id in a['photos']]
        return {'set': sets, 'pool': [{'id': '42@N00', 'title': 'Pool'}], 'stat': 'ok'}

    def _photosets_create(self, title, primary_photo_id, **_):
        album_id = self.add_album(title, [primary_photo_id])
        return {'photoset': {'id': album_id, 'url': ''}, 'stat': 'ok'}

    def _photosets_addPhoto(self, photoset_id, photo_id, **_):
        album = next(a for a in self.albums if a['id'] == photoset_id)
        if photo_id in album['photos']:
            raise FlickrApiError(flickrcli.ALREADY_IN_SET, 'Photo already in set')
        album['photos'].append(photo_id)
        return {'stat': 'ok'}

    def _photos_delete(self, photo_id, **_):
        for album in self.albums:
            if photo_id in album['photos']:
                album['photos'].remove(photo_id)
        return {'stat': 'ok'}

    def _photos_addTags(self, photo_id, tags, **_):
        self.machine_tags[photo_id] = tags
        return {'stat': 'ok'}

    def _photos_search(self, machine_tags, **_):
        total = sum(1 for tag in self.machine_tags.values() if tag == machine_tags)
        return {'photos': {'total': str(total), 'photo': []}, 'stat': 'ok'}

    def _test_login(self, **_):
        return {'user': {'id': '1@N00', 'username': {'_content': 'tester'}}, 'stat': 'ok'}


def raise_hard_abort(count):
    raise HardAbort(count)


@pytest.fixture
def logger():
    return logging.getLogger('flickrcli.tests')


@pytest.fixture
def client():
    return FakeClient()


@pytest.fixture
def token(logger):
    return CancellationToken(logger, on_abort=raise_hard_abort)


@pytest.fixture
def engine(client, token, logger):
    return TransferEngine(client, token, logger, show_progress=False)


@pytest.fixture
def fake_response():
    return FakeResponse


@pytest.fixture
def hard_abort():
    return HardAbort
