#!/usr/bin/env python3
# /// script
# requires-python = ">=3.11"
# dependencies = [
#     "flickr-api>=0.8.0",
#     "oauthlib>=3.0",
#     "requests>=2.28",
#     "requests-toolbelt>=1.0",
#     "PyYAML>=6.0",
# ]
# ///
"""
flickrcli v1.0
- Download albums by title, or every photo into hash-sharded ID directories
- Resumable: existing files are skipped, partial downloads never reach the final path
- Upload directories into albums (missing albums are created on the fly)
- Delete album contents, list albums and files
- Content checksums as machine tags, with duplicate detection
"""

import argparse
import fnmatch
import hashlib
import json
import logging
import os
import re
import shutil
import signal
import sys
import tempfile
import time
import webbrowser
import xml.etree.ElementTree as ET
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from functools import reduce
from pathlib import Path
from typing import Callable, Optional
from urllib.parse import parse_qsl, urlencode

import flickr_api
import requests
import yaml
from flickr_api import flickrerrors
from flickr_api.api import flickr
from oauthlib.oauth1 import SIGNATURE_TYPE_BODY, Client as OAuthClient
from requests_toolbelt import MultipartEncoder, MultipartEncoderMonitor


VERSION = '1.0.0'

# ============== CONSTANTS ==============

CONFIG_ENV = 'FLICKRCLI_CONFIG'
DEFAULT_CONFIG = Path('config.yml')
DEFAULT_LOG_DIR = Path('log')
DEFAULT_DESTINATION = Path('photosets')

UPLOAD_URL = 'https://up.flickr.com/services/upload/'
ORIGINAL_URL = 'https://farm{farm}.staticflickr.com/{server}/{id}_{secret}_o.{format}'
TAG_URL = 'https://www.flickr.com/photos/tags/{tag}'

DOWNLOAD_STREAM_READ_LEN = 4096
PROGRESSBAR_ITEMS = 35
SPEED_SAMPLES = 6
MIN_PLAUSIBLE_SIZE = 1024  # HTML error pages served instead of media stay below this
CONNECT_TIMEOUT = 60
READ_TIMEOUT = 300
ABORT_THRESHOLD = 2
PER_PAGE = 500

FILES_IGNORE = {'.', '..', '.DS_Store'}
ACCEPTED_EXTENSIONS = {'jpg', 'jpeg', 'png', 'gif', 'mov', 'avi', 'mts', 'mp4'}

# flickr.photosets.addPhoto error "Photo already in set"
ALREADY_IN_SET = 3


# ============== ERRORS ==============

class FlickrCliError(Exception):
    """Base class for errors reported by flickrcli."""


class ConfigError(FlickrCliError):
    """Config file missing or incomplete."""


class FlickrError(FlickrCliError):
    """A remote call did not succeed."""


class FlickrApiError(FlickrError):
    """Flickr answered with stat=fail."""

    def __init__(self, code: int, message: str):
        super().__init__(f"Flickr API error {code}: {message}")
        self.code = code
        self.message = message


class FlickrTransportError(FlickrError):
    """Network failure or unreadable response."""


class TransferAborted(FlickrCliError):
    """Raised inside a transfer callback to stop the body stream."""


class ReconciliationError(FlickrCliError):
    """Album creation or membership failed; the run cannot continue."""


# ============== OUTPUT / LOGGING ==============

class OutputLevel:
    QUIET = 0
    NORMAL = 1
    VERBOSE = 2


LOG_LEVELS = {
    OutputLevel.QUIET: logging.WARNING,
    OutputLevel.NORMAL: logging.INFO,
    OutputLevel.VERBOSE: logging.DEBUG,
}
LOG_FORMAT = '[%(asctime)s] %(levelname)s: %(message)s'


def setup_logging(command: str, log_dir: Path = None, level: int = OutputLevel.NORMAL):
    """Configure the logger for one command run.

    Console output goes to stderr at the requested level. When a log directory
    is given, everything is also written to flickr_<command>_<YYYYMMDD>.log and
    identifiers of failed items to flickr_<command>_files_failed_<YYYYMMDD>.log.

    Returns:
        (logger, failed_logger)
    """
    logger = logging.getLogger(f'flickrcli.{command}')
    failed = logging.getLogger(f'flickrcli.{command}.failed')
    for lg in (logger, failed):
        for handler in list(lg.handlers):
            lg.removeHandler(handler)
            handler.close()
        lg.propagate = False
    logger.setLevel(logging.DEBUG)
    failed.setLevel(logging.INFO)

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(LOG_LEVELS.get(level, logging.INFO))
    console.setFormatter(logging.Formatter('%(message)s'))
    logger.addHandler(console)

    if log_dir is None:
        failed.addHandler(logging.NullHandler())
        return logger, failed

    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    stamp = datetime.now().strftime('%Y%m%d')

    file_handler = logging.FileHandler(log_dir / f'flickr_{command}_{stamp}.log', encoding='utf-8')
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(file_handler)

    failed_handler = logging.FileHandler(
        log_dir / f'flickr_{command}_files_failed_{stamp}.log', encoding='utf-8')
    failed_handler.setFormatter(logging.Formatter('%(message)s'))
    failed.addHandler(failed_handler)

    return logger, failed


def format_bytes(bytes_count: int) -> str:
    """Format bytes as human readable."""
    if bytes_count < 1024:
        return f"{bytes_count}B"
    elif bytes_count < 1024 * 1024:
        return f"{bytes_count / 1024:.1f}KB"
    elif bytes_count < 1024 * 1024 * 1024:
        return f"{bytes_count / 1024 / 1024:.1f}MB"
    else:
        return f"{bytes_count / 1024 / 1024 / 1024:.2f}GB"


class ProgressMeter:
    """Terminal progress for a single transfer with a rolling throughput average.

    Throughput is sampled once per wall-clock second and averaged over the last
    SPEED_SAMPLES deltas (zero-filled at the start). The line is redrawn at most
    once per second and terminated by finish().
    """

    def __init__(self, label: str, total: int = None, stream=None,
                 width: int = PROGRESSBAR_ITEMS, clock: Callable[[], float] = time.time,
                 enabled: bool = True):
        self.label = label
        self.total = total or None
        self.stream = stream if stream is not None else sys.stdout
        self.width = width
        self.clock = clock
        self.enabled = enabled
        self.transferred = 0
        self._samples = deque([0] * SPEED_SAMPLES, maxlen=SPEED_SAMPLES)
        self._second = int(clock())
        self._sampled = 0

    @property
    def speed(self) -> float:
        """Bytes per second over the sample window."""
        return sum(self._samples) / len(self._samples)

    @property
    def percent(self) -> Optional[float]:
        if not self.total:
            return None
        return min(self.transferred / self.total * 100, 100.0)

    def update(self, transferred: int, total: int = None):
        """Set the cumulative byte count."""
        if total:
            self.total = total
        self.transferred = transferred
        second = int(self.clock())
        if second != self._second:
            self._samples.append(transferred - self._sampled)
            self._sampled = transferred
            self._second = second
            self._render()

    def render_line(self) -> str:
        speed = f"{format_bytes(int(self.speed))}/s"
        if self.total:
            pct = self.percent
            filled = int(self.width * pct / 100)
            bar = '#' * filled + ' ' * (self.width - filled)
            return f"[{self.label}] {pct:6.2f}% [{bar}] {format_bytes(self.transferred)} {speed:>10}"
        return f"[{self.label}] {format_bytes(self.transferred)} {speed:>10}"

    def _render(self):
        if not self.enabled:
            return
        self.stream.write(f"\r{self.render_line()}\x1b[0K")
        self.stream.flush()

    def finish(self):
        """Draw the final state and move to a new line."""
        if not self.enabled:
            return
        self._render()
        self.stream.write('\n')
        self.stream.flush()


# ============== CANCELLATION ==============

def _hard_exit(count: int):
    os._exit(count)


class CancellationToken:
    """Run-wide cancellation counter fed by termination signals.

    The first signal asks every loop to stop starting new work and every
    download to stop reading. Reaching the threshold calls on_abort, which by
    default terminates the process without further cleanup.
    """

    SIGNALS = ('SIGINT', 'SIGTERM', 'SIGHUP')

    def __init__(self, logger: logging.Logger = None, threshold: int = ABORT_THRESHOLD,
                 on_abort: Callable[[int], None] = None):
        # Only rebound by handle(), which runs on the main thread between bytecodes.
        self.count = 0
        self.threshold = threshold
        self.logger = logger or logging.getLogger('flickrcli')
        self.on_abort = on_abort or _hard_exit
        self._previous = {}

    @property
    def cancelled(self) -> bool:
        return self.count >= 1

    @property
    def aborted(self) -> bool:
        return self.count >= self.threshold

    def install(self):
        """Register handle() for SIGINT, SIGTERM and SIGHUP where available."""
        for name in self.SIGNALS:
            signum = getattr(signal, name, None)
            if signum is None:
                continue
            self._previous[signum] = signal.signal(signum, self.handle)

    def restore(self):
        """Put back the handlers that were active before install()."""
        for signum, handler in self._previous.items():
            signal.signal(signum, handler)
        self._previous = {}

    def handle(self, signum, frame=None):
        self.count += 1
        self.logger.warning(f"Signal {signum} count {self.count}")
        if self.count >= self.threshold:
            self.on_abort(self.count)


# ============== CONFIG ==============

def default_config_path() -> Path:
    """Config path from $FLICKRCLI_CONFIG, else ./config.yml."""
    return Path(os.environ.get(CONFIG_ENV) or DEFAULT_CONFIG)


def load_config(path: Path, require_token: bool = True) -> dict:
    """Load and validate the YAML config.

    Raises:
        ConfigError: file missing, unreadable or without the flickr credentials
    """
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")
    try:
        with open(path, encoding='utf-8') as f:
            config = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid config file {path}: {e}") from e
    if not isinstance(config, dict):
        raise ConfigError(f"Invalid config file {path}: expected a mapping")

    required = ['consumer_key', 'consumer_secret']
    if require_token:
        required += ['token', 'token_secret']
    flickr_config = config.get('flickr') or {}
    missing = [f"flickr.{key}" for key in required if not flickr_config.get(key)]
    if missing:
        raise ConfigError(f"Missing {', '.join(missing)} in {path}")
    return config


def save_config(path: Path, config: dict):
    """Write the config as YAML, readable by the owner only."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, 'w', encoding='utf-8') as f:
        yaml.safe_dump(config, f, default_flow_style=False, sort_keys=False)
    os.chmod(path, 0o600)


def read_timeout(config: dict) -> float:
    transfer = config.get('transfer') or {}
    return float(transfer.get('read_timeout') or READ_TIMEOUT)


# ============== API CLIENT ==============

def unwrap(value, default=''):
    """Flatten Flickr's {'_content': ...} wrappers."""
    if isinstance(value, dict):
        return value.get('_content', default)
    return default if value is None else value


def parse_response(method: str, result) -> dict:
    """Decode a REST response and raise on stat=fail."""
    if isinstance(result, bytes):
        text = result.decode('utf-8')
        if not text:
            raise FlickrTransportError(f"{method}: empty response from Flickr API")
        if text.startswith('<!DOCTYPE') or text.startswith('<html'):
            preview = text[:200].replace('\n', ' ')
            raise FlickrTransportError(f"{method}: HTML error response: {preview}")
        try:
            result = json.loads(text)
        except json.JSONDecodeError as e:
            raise FlickrTransportError(f"{method}: invalid response: {text[:200]}") from e
    if isinstance(result, dict) and result.get('stat') == 'fail':
        raise FlickrApiError(int(result.get('code') or 0), result.get('message', 'Unknown error'))
    return result


def parse_upload_response(content: bytes) -> dict:
    """Parse the XML answer of the upload endpoint.

    Returns:
        dict with 'stat' and 'photoid', plus 'code' and 'message' on failure
    """
    try:
        root = ET.fromstring(content)
    except ET.ParseError as e:
        raise FlickrTransportError(f"upload: unreadable response: {content[:200]!r}") from e
    result = {
        'stat': root.get('stat', ''),
        'photoid': (root.findtext('photoid') or '').strip(),
    }
    err = root.find('err')
    if err is not None:
        result['code'] = int(err.get('code') or 0)
        result['message'] = err.get('msg', '')
    return result


class FlickrClient:
    """Authenticated access to the Flickr REST API, the upload endpoint and static files."""

    def __init__(self, consumer_key: str, consumer_secret: str, token: str = None,
                 token_secret: str = None, connect_timeout: float = CONNECT_TIMEOUT,
                 read_timeout: float = READ_TIMEOUT):
        flickr_api.set_keys(api_key=consumer_key, api_secret=consumer_secret)
        self.auth = flickr_api.auth.AuthHandler(
            key=consumer_key, secret=consumer_secret, callback='oob',
            access_token_key=token, access_token_secret=token_secret)
        flickr_api.set_auth_handler(self.auth)
        self.timeout = (connect_timeout, read_timeout)
        self.session = requests.Session()

    @classmethod
    def from_config(cls, config: dict) -> 'FlickrClient':
        creds = config['flickr']
        return cls(creds['consumer_key'], creds['consumer_secret'],
                   creds.get('token'), creds.get('token_secret'),
                   read_timeout=read_timeout(config))

    def call(self, method: str, **params) -> dict:
        """Call a REST method by its full name, e.g. 'flickr.photosets.getList'."""
        params['format'] = 'json'
        params['nojsoncallback'] = 1
        func = reduce(getattr, method.split('.')[1:], flickr)
        try:
            result = func(**params)
        except flickrerrors.FlickrAPIError as e:
            raise FlickrApiError(int(getattr(e, 'code', 0) or 0),
                                 getattr(e, 'message', str(e))) from e
        except (flickrerrors.FlickrError, requests.RequestException) as e:
            raise FlickrTransportError(f"{method}: {e}") from e
        return parse_response(method, result)

    def open_stream(self, url: str) -> requests.Response:
        """Start a streaming GET; the caller closes the response."""
        try:
            response = self.session.get(url, stream=True, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            raise FlickrTransportError(f"GET {url}: {e}") from e
        return response

    def upload(self, path: Path, title: str = '', description: str = '', tags: str = '',
               callback: Callable = None) -> dict:
        """POST a file to the upload endpoint.

        The multipart body is streamed through a MultipartEncoderMonitor so that
        callback(monitor) sees every chunk; raising from it aborts the request.

        Returns:
            Parsed upload response, see parse_upload_response()
        """
        path = Path(path)
        params = {'api_key': self.auth.key}
        for key, value in (('title', title), ('description', description), ('tags', tags)):
            if value:
                params[key] = value
        signed = self.sign_upload(params)

        with open(path, 'rb') as fh:
            fields = dict(signed)
            fields['photo'] = (path.name, fh, 'application/octet-stream')
            monitor = MultipartEncoderMonitor(MultipartEncoder(fields=fields), callback)
            try:
                response = self.session.post(UPLOAD_URL, data=monitor,
                                             headers={'Content-Type': monitor.content_type},
                                             timeout=self.timeout)
            except requests.RequestException as e:
                raise FlickrTransportError(f"upload {path.name}: {e}") from e
        return parse_upload_response(response.content)

    def sign_upload(self, params: dict) -> dict:
        """Add the oauth_* fields and an HMAC-SHA1 signature to the upload form.

        Flickr expects the OAuth parameters in the form itself, signed over every
        field except the photo.
        """
        oauth = OAuthClient(self.auth.key, client_secret=self.auth.secret,
                            resource_owner_key=self.auth.access_token_key,
                            resource_owner_secret=self.auth.access_token_secret,
                            signature_type=SIGNATURE_TYPE_BODY)
        _, _, body = oauth.sign(UPLOAD_URL, http_method='POST',
                                body=urlencode({k: str(v) for k, v in params.items()}),
                                headers={'Content-Type': 'application/x-www-form-urlencoded'})
        return dict(parse_qsl(body, keep_blank_values=True))

    def login(self) -> dict:
        """Return the authenticated user as {'id', 'username'}."""
        user = self.call('flickr.test.login').get('user', {})
        return {'id': user.get('id', ''), 'username': unwrap(user.get('username'))}


# ============== MODELS ==============

class TransferStatus(str, Enum):
    SUCCESS = 'success'
    SKIPPED = 'skipped'
    FAILED = 'failed'


def _int(value, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


@dataclass
class Album:
    """A photoset as listed by flickr.photosets.getList."""
    id: str
    title: str
    photos: int = 0
    videos: int = 0

    @property
    def total(self) -> int:
        return self.photos + self.videos

    @classmethod
    def from_listing(cls, data: dict) -> 'Album':
        return cls(
            id=str(data['id']),
            title=unwrap(data.get('title')),
            photos=_int(data.get('photos')),
            videos=_int(data.get('videos')),
        )


@dataclass
class MediaItem:
    """One remote photo or video, resolved through flickr.photos.getInfo."""
    id: str
    secret: str = ''
    title: str = ''
    media: str = 'photo'
    original_format: str = 'jpg'
    original_secret: str = ''
    farm: str = ''
    server: str = ''
    size: Optional[int] = None
    description: str = ''
    license: str = ''
    rotation: int = 0
    owner: dict = field(default_factory=dict)
    visibility: dict = field(default_factory=dict)
    dates: dict = field(default_factory=dict)
    tags: list = field(default_factory=list)
    location: Optional[dict] = None
    albums: list = field(default_factory=list)
    pools: list = field(default_factory=list)

    @classmethod
    def from_info(cls, info: dict) -> 'MediaItem':
        photo = info.get('photo', info)
        owner = photo.get('owner') or {}
        vis = photo.get('visibility') or {}
        dates = photo.get('dates') or {}

        tags = []
        for tag in (photo.get('tags') or {}).get('tag', []):
            tags.append({
                'id': tag.get('id', ''),
                'raw': tag.get('raw', ''),
                # flickr_api renames _content to text when it cleans responses
                'slug': tag.get('_content', tag.get('text', '')),
                'machine': bool(_int(tag.get('machine_tag'))),
            })

        location = None
        loc = photo.get('location')
        if loc:
            location = {
                'latitude': float(loc.get('latitude') or 0),
                'longitude': float(loc.get('longitude') or 0),
                'accuracy': _int(loc.get('accuracy')),
            }

        return cls(
            id=str(photo['id']),
            secret=photo.get('secret', ''),
            title=unwrap(photo.get('title')),
            media=photo.get('media', 'photo'),
            original_format=photo.get('originalformat') or 'jpg',
            original_secret=photo.get('originalsecret', ''),
            farm=str(photo.get('farm', '')),
            server=str(photo.get('server', '')),
            description=unwrap(photo.get('description')),
            license=str(photo.get('license', '')),
            rotation=_int(photo.get('rotation')),
            owner={
                'id': owner.get('nsid', ''),
                'username': owner.get('username', ''),
                'realname': owner.get('realname', ''),
                'path_alias': owner.get('path_alias') or '',
            },
            visibility={
                'public': bool(_int(vis.get('ispublic'))),
                'friend': bool(_int(vis.get('isfriend'))),
                'family': bool(_int(vis.get('isfamily'))),
            },
            dates={
                'posted': _int(dates.get('posted')) or None,
                'taken': dates.get('taken') or None,
                'taken_granularity': _int(dates.get('takengranularity')),
                'uploaded': _int(photo.get('dateuploaded')) or None,
                'lastupdate': _int(dates.get('lastupdate')) or None,
            },
            tags=tags,
            location=location,
        )

    def original_url(self) -> str:
        return ORIGINAL_URL.format(
            farm=self.farm, server=self.server, id=self.id,
            secret=self.original_secret or self.secret, format=self.original_format)

    def taken_timestamp(self) -> Optional[float]:
        """Capture time as a local POSIX timestamp."""
        taken = self.dates.get('taken')
        if not taken:
            return None
        try:
            return datetime.strptime(taken, '%Y-%m-%d %H:%M:%S').timestamp()
        except ValueError:
            return None

    def updated_timestamp(self) -> Optional[float]:
        return self.dates.get('lastupdate')


@dataclass
class TransferTask:
    """One item to move. For downloads source is a photo ID and destination a
    directory; for uploads source is a local file and destination the album titles."""
    source: object
    destination: object
    secret: Optional[str] = None
    basename: Optional[str] = None
    expected_size: Optional[int] = None
    temp_suffix: str = '.tmp'
    relative_dir: Path = Path('.')


@dataclass
class TransferOutcome:
    status: TransferStatus
    path: Optional[Path] = None
    size: int = 0
    reason: str = ''
    item: Optional[MediaItem] = None
    photo_id: str = ''
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return self.status is TransferStatus.SUCCESS


# ============== HELPERS ==============

def safe_filename(name: str) -> str:
    """Make a remote title usable as a single path component."""
    name = str(name).replace('/', '_').replace('\\', '_').replace('\0', '')
    if name.strip() in ('', '.', '..'):
        return '_'
    return name


def dedupe_path(path: Path) -> Path:
    """Return path, or path with a _N counter before the suffix if it is taken."""
    counter = 1
    base_name = path.stem
    extension = path.suffix
    while path.exists():
        path = path.with_name(f"{base_name}_{counter}{extension}")
        counter += 1
    return path


def id_shard_dir(root: Path, photo_id: str) -> Path:
    """root/md5(id)[0:2]/md5(id)[2:4]/id"""
    digest = hashlib.md5(str(photo_id).encode('utf-8')).hexdigest()
    return Path(root) / digest[0:2] / digest[2:4] / str(photo_id)


def split_csv(value: str) -> list:
    if not value:
        return []
    return [part.strip() for part in value.split(',') if part.strip()]


def format_tags(tags: list) -> str:
    """Flickr tag string: space separated, multi-word tags quoted."""
    return ' '.join(f'"{tag}"' if ' ' in tag else tag for tag in tags)


def file_digest(path: Path, algorithm: str) -> str:
    h = hashlib.new(algorithm)
    with open(path, 'rb') as f:
        for block in iter(lambda: f.read(DOWNLOAD_STREAM_READ_LEN), b''):
            h.update(block)
    return h.hexdigest()


def _discard(path: Path):
    try:
        path.unlink()
    except FileNotFoundError:
        pass


# ============== CATALOG ==============

class CatalogWalker:
    """Enumerates remote albums and photos, and local files to upload.

    Every remote listing is followed page by page until the reported page
    count is exhausted. Iteration stops as soon as the token is cancelled.
    """

    def __init__(self, client, token: CancellationToken, logger: logging.Logger = None):
        self.client = client
        self.token = token
        self.logger = logger or logging.getLogger('flickrcli')

    def paginate(self, method: str, container: str, key: str, **params):
        """Yield (page, pages, entry) for every entry of a paged listing."""
        page, pages = 1, 1
        while page <= pages:
            if self.token.cancelled:
                return
            data = self.client.call(method, page=page, **params)
            listing = data.get(container) or {}
            pages = _int(listing.get('pages'), 1)
            self.logger.debug(f"{method} page {page}/{pages}")
            for entry in listing.get(key, []):
                if self.token.cancelled:
                    return
                yield page, pages, entry
            page += 1

    def fetch_albums(self) -> list:
        """All albums of the authenticated user, in listing order."""
        return [Album.from_listing(entry) for _, _, entry in
                self.paginate('flickr.photosets.getList', 'photosets', 'photoset',
                              per_page=PER_PAGE)]

    @staticmethod
    def select_albums(albums: list, requested: list = None) -> list:
        """Albums whose title was requested, in listing order.

        Requested names are first matched exactly. Names that match no title are
        then used as glob patterns against every title.
        """
        if not requested:
            return list(albums)
        titles = [album.title for album in albums]
        selected = []
        unmatched = []
        for name in requested:
            if name in titles:
                if name not in selected:
                    selected.append(name)
            else:
                unmatched.append(name)
        for pattern in unmatched:
            for title in titles:
                if fnmatch.fnmatchcase(title, pattern) and title not in selected:
                    selected.append(title)
        return [album for album in albums if album.title in selected]

    def iter_album_photos(self, album: Album):
        return self.paginate('flickr.photosets.getPhotos', 'photoset', 'photo',
                             photoset_id=album.id)

    def iter_not_in_set(self):
        return self.paginate('flickr.photos.getNotInSet', 'photos', 'photo', per_page=PER_PAGE)

    def iter_my_photos(self, extras: str = ''):
        return self.paginate('flickr.people.getPhotos', 'photos', 'photo',
                             user_id='me', per_page=PER_PAGE, extras=extras)

    def collect_local_files(self, roots: list, recursive: bool = False) -> list:
        """Sorted (root, path) pairs for the regular files under each root."""
        found = []
        for root in roots:
            root = Path(root)
            if not root.is_dir():
                self.logger.error(f"❌ Not a directory: {root}")
                continue
            candidates = root.rglob('*') if recursive else root.iterdir()
            for path in candidates:
                if path.name in FILES_IGNORE or not path.is_file():
                    continue
                found.append((root, path))
        return sorted(found, key=lambda pair: str(pair[1]))


# ============== TRANSFER ==============

class TransferEngine:
    """Moves the bytes of exactly one media item between Flickr and the local disk.

    Downloads land in a temp file next to the final path and are promoted only
    once complete and plausible; uploads are checked locally before any
    network call. Failures are classified and reported per item, and the ID or
    path of every failed item goes to the failed-items log.
    """

    def __init__(self, client, token: CancellationToken, logger: logging.Logger = None,
                 failed_logger: logging.Logger = None, show_progress: bool = True,
                 progress_stream=None):
        self.client = client
        self.token = token
        self.logger = logger or logging.getLogger('flickrcli')
        self.failed = failed_logger or logging.getLogger('flickrcli.failed')
        self.show_progress = show_progress
        self.progress_stream = progress_stream
        self.bytes_total = 0

    def _meter(self, label: str, total: int = None) -> ProgressMeter:
        return ProgressMeter(label, total, stream=self.progress_stream, enabled=self.show_progress)

    def _fail(self, key: str, reason: str, item: MediaItem = None,
              cancelled: bool = False) -> TransferOutcome:
        if cancelled:
            self.logger.warning(f"⏹️  {key}: {reason}")
        else:
            self.logger.error(f"✗ {key}: {reason}")
            self.failed.info(key)
        return TransferOutcome(TransferStatus.FAILED, reason=reason, item=item, cancelled=cancelled)

    def resolve(self, photo_id: str, secret: str = None) -> MediaItem:
        params = {'photo_id': photo_id}
        if secret:
            params['secret'] = secret
        return MediaItem.from_info(self.client.call('flickr.photos.getInfo', **params))

    # ---- download ----

    def download(self, task: TransferTask, force: bool = False) -> TransferOutcome:
        """Download task.source (a photo ID) into the existing directory task.destination."""
        photo_id = str(task.source)
        try:
            item = self.resolve(photo_id, task.secret)
        except FlickrError as e:
            return self._fail(photo_id, f"metadata: {e}")

        fmt = item.original_format
        name = safe_filename(task.basename or item.title or item.id)
        dest_dir = Path(task.destination)
        final = dest_dir / f"{name}.{fmt}"
        temp = dest_dir / f"{item.id}.{fmt}{task.temp_suffix}"

        if final.exists() and not force:
            self.logger.debug(f"⏭️  {final} (exists)")
            return TransferOutcome(TransferStatus.SKIPPED, path=final,
                                   size=final.stat().st_size, item=item)

        if item.media == 'video':
            return self._fail(photo_id, "video download is not supported", item)

        try:
            response = self.client.open_stream(item.original_url())
        except FlickrError as e:
            return self._fail(photo_id, str(e), item)

        expected = task.expected_size
        if expected is None:
            expected = _int(response.headers.get('Content-Length'), 0) or None
        item.size = expected

        meter = self._meter(name, expected)
        written = 0
        cancelled = False
        try:
            with open(temp, 'wb') as fh:
                for chunk in response.iter_content(DOWNLOAD_STREAM_READ_LEN):
                    if self.token.cancelled:
                        cancelled = True
                        break
                    if not chunk:
                        continue
                    fh.write(chunk)
                    written += len(chunk)
                    meter.update(written)
        except (requests.RequestException, OSError) as e:
            _discard(temp)
            return self._fail(photo_id, f"stream: {e}", item)
        finally:
            response.close()
            meter.finish()

        if cancelled:
            _discard(temp)
            return self._fail(photo_id, "cancelled", item, cancelled=True)

        actual = temp.stat().st_size
        if expected is not None and actual != expected:
            _discard(temp)
            return self._fail(photo_id, f"size mismatch: expected {expected}, got {actual}", item)
        if actual <= MIN_PLAUSIBLE_SIZE:
            _discard(temp)
            return self._fail(photo_id, f"implausibly small payload ({actual} bytes)", item)

        if not force:
            final = dedupe_path(final)
        try:
            os.replace(temp, final)
        except OSError as e:
            _discard(temp)
            return self._fail(photo_id, f"rename: {e}", item)
        self._stamp(final, item)

        self.bytes_total += actual
        self.logger.info(f"✓ {final} ({format_bytes(actual)})")
        return TransferOutcome(TransferStatus.SUCCESS, path=final, size=actual, item=item)

    def _stamp(self, path: Path, item: MediaItem):
        """atime <- last update, mtime <- capture time."""
        taken = item.taken_timestamp()
        updated = item.updated_timestamp()
        if taken is None and updated is None:
            return
        try:
            os.utime(path, (updated or taken, taken or updated))
        except OSError as e:
            self.logger.warning(f"⚠️  Could not set timestamps on {path}: {e}")

    # ---- upload ----

    def upload(self, task: TransferTask, description: str = '', tags: str = '',
               dry_run: bool = False, move_dir: Path = None) -> TransferOutcome:
        """Upload the local file task.source.

        On success and with move_dir set, the file is moved to
        move_dir/task.relative_dir/<name>.
        """
        path = Path(task.source)
        key = str(path)
        if path.suffix.lower().lstrip('.') not in ACCEPTED_EXTENSIONS:
            return self._fail(key, f"unsupported extension '{path.suffix}'")

        if dry_run:
            albums = ', '.join(task.destination or []) or '-'
            self.logger.info(f"[dry] {path} -> {albums}")
            return TransferOutcome(TransferStatus.SKIPPED, path=path, reason='dry-run')

        size = path.stat().st_size
        meter = self._meter(path.name, size)

        def on_progress(monitor):
            meter.update(monitor.bytes_read, monitor.len)
            if self.token.aborted:
                raise TransferAborted(f"upload of {path.name} aborted")

        try:
            result = self.client.upload(path, title=path.stem, description=description,
                                        tags=tags, callback=on_progress)
        except TransferAborted as e:
            return self._fail(key, str(e), cancelled=True)
        except (FlickrError, OSError) as e:
            return self._fail(key, str(e))
        finally:
            meter.finish()

        photo_id = result.get('photoid', '')
        if result.get('stat') != 'ok' or not _int(photo_id):
            code = result.get('code', '-')
            message = result.get('message', 'no photo id returned')
            return self._fail(key, f"upload failed ({code}): {message}")

        self.bytes_total += size
        self.logger.info(f"✓ {path} -> {photo_id} ({format_bytes(size)})")
        outcome = TransferOutcome(TransferStatus.SUCCESS, path=path, size=size, photo_id=photo_id)
        if move_dir:
            outcome.path = self._move(path, Path(move_dir) / task.relative_dir)
        return outcome

    def _move(self, path: Path, target_dir: Path) -> Path:
        target_dir.mkdir(parents=True, exist_ok=True)
        target = target_dir / path.name
        try:
            shutil.move(str(path), str(target))
        except OSError as e:
            self.logger.warning(f"⚠️  Uploaded but could not move {path}: {e}")
            return path
        self.logger.debug(f"📦 {path} -> {target}")
        return target


# ============== ALBUMS ==============

class AlbumReconciler:
    """Keeps uploaded photos in their destination albums.

    Requested titles are matched case-insensitively against the albums fetched
    at the start of the run. Albums that do not exist yet are created after the
    first successful upload, with that photo as primary, so no empty album is
    ever created.
    """

    def __init__(self, client, albums: list, titles: list, logger: logging.Logger = None):
        self.client = client
        self.logger = logger or logging.getLogger('flickrcli')
        self.album_ids = []
        self.pending = []

        by_title = {}
        for album in albums:
            by_title.setdefault(album.title.lower(), album.id)
        for title in titles:
            album_id = by_title.get(title.lower())
            if album_id is None:
                if title.lower() not in (p.lower() for p in self.pending):
                    self.pending.append(title)
            elif album_id not in self.album_ids:
                self.album_ids.append(album_id)

    def after_upload(self, photo_id: str):
        """Create pending albums (first call only), then add photo_id to every album.

        Raises:
            ReconciliationError: anything but "already in set" from Flickr
        """
        if self.pending:
            self._create_pending(photo_id)
        for album_id in self.album_ids:
            self._add(album_id, photo_id)

    def _create_pending(self, primary_photo_id: str):
        for title in self.pending:
            try:
                data = self.client.call('flickr.photosets.create', title=title,
                                        primary_photo_id=primary_photo_id)
            except FlickrError as e:
                raise ReconciliationError(f"Could not create album '{title}': {e}") from e
            album_id = (data.get('photoset') or {}).get('id')
            if not album_id:
                raise ReconciliationError(f"Could not create album '{title}': no id returned")
            self.logger.info(f"📁 Created album '{title}' ({album_id})")
            self.album_ids.append(str(album_id))
        self.pending = []

    def _add(self, album_id: str, photo_id: str):
        try:
            self.client.call('flickr.photosets.addPhoto', photoset_id=album_id, photo_id=photo_id)
        except FlickrApiError as e:
            if e.code == ALREADY_IN_SET:
                self.logger.debug(f"{photo_id} already in album {album_id}")
                return
            raise ReconciliationError(f"Could not add {photo_id} to album {album_id}: {e}") from e
        except FlickrError as e:
            raise ReconciliationError(f"Could not add {photo_id} to album {album_id}: {e}") from e
        self.logger.debug(f"{photo_id} added to album {album_id}")


# ============== METADATA ==============

class MetadataExporter:
    """Writes a <id>.yml sidecar with the extended metadata of a photo."""

    def __init__(self, client, logger: logging.Logger = None):
        self.client = client
        self.logger = logger or logging.getLogger('flickrcli')

    def contexts(self, photo_id: str):
        """(albums, pools) the photo belongs to."""
        data = self.client.call('flickr.photos.getAllContexts', photo_id=photo_id)
        albums = [{'id': str(ctx.get('id', '')), 'title': unwrap(ctx.get('title'))}
                  for ctx in data.get('set', [])]
        pools = [{'id': str(ctx.get('id', '')), 'title': unwrap(ctx.get('title'))}
                 for ctx in data.get('pool', [])]
        return albums, pools

    @staticmethod
    def build_record(item: MediaItem) -> dict:
        record = {
            'id': item.id,
            'title': item.title,
            'description': item.description,
            'license': item.license,
            'rotation': item.rotation,
            'media': item.media,
            'format': item.original_format,
            'owner': dict(item.owner),
            'visibility': dict(item.visibility),
            'dates': dict(item.dates),
            'tags': [{'id': tag['id'], 'slug': tag['slug'], 'title': tag['raw'],
                      'machine': tag['machine']} for tag in item.tags],
        }
        if item.location:
            record['location'] = dict(item.location)
        record['albums'] = list(item.albums)
        record['pools'] = list(item.pools)
        return record

    def export(self, item: MediaItem, directory: Path) -> Path:
        item.albums, item.pools = self.contexts(item.id)
        path = Path(directory) / f"{item.id}.yml"
        with open(path, 'w', encoding='utf-8') as f:
            yaml.safe_dump(self.build_record(item), f, default_flow_style=False,
                           allow_unicode=True, sort_keys=False)
        self.logger.debug(f"📝 {path}")
        return path


# ============== COMMANDS ==============

@dataclass
class Services:
    """Collaborators handed to every command."""
    config_path: Path
    config: dict
    logger: logging.Logger
    failed: logging.Logger
    token: CancellationToken
    client_factory: Callable[[dict], object] = FlickrClient.from_config
    show_progress: bool = True

    def make_client(self):
        return self.client_factory(self.config)

    def make_engine(self, client) -> TransferEngine:
        return TransferEngine(client, self.token, self.logger, self.failed,
                              show_progress=self.show_progress)


def cmd_auth(args, services: Services) -> int:
    """Ask for the API key if needed, run the OAuth handshake, store the token."""
    logger = services.logger
    path = services.config_path
    try:
        config = load_config(path, require_token=False)
    except ConfigError:
        config = {}
    creds = config.setdefault('flickr', {})

    if not creds.get('consumer_key') or not creds.get('consumer_secret'):
        print("=" * 50)
        print("🔐 Flickr API Setup")
        print("=" * 50)
        print("\nYou need a Flickr API key to use this tool:")
        print("📎 https://www.flickr.com/services/apps/create/apply/")
        creds['consumer_key'] = input("\n🔑 Consumer key: ").strip()
        creds['consumer_secret'] = input("🔒 Consumer secret: ").strip()
        if not creds['consumer_key'] or not creds['consumer_secret']:
            logger.error("❌ Consumer key and secret are required.")
            return 1
        save_config(path, config)
        logger.info(f"✓ Saved to {path}")

    if creds.get('token') and creds.get('token_secret') and not args.force:
        logger.info("✓ Already authorized (use --force to authorize again)")
    else:
        flickr_api.set_keys(api_key=creds['consumer_key'], api_secret=creds['consumer_secret'])
        try:
            auth = flickr_api.auth.AuthHandler(key=creds['consumer_key'],
                                               secret=creds['consumer_secret'], callback='oob')
            url = auth.get_authorization_url('delete')  # 'delete' includes read/write
        except (flickr_api.auth.AuthHandlerError, flickrerrors.FlickrError,
                requests.RequestException) as e:
            logger.error(f"❌ Could not start authorization: {e}")
            return 1

        print("\n" + "=" * 50)
        print("🔗 OAuth Authorization")
        print("=" * 50)
        print(f"\n📎 {url}")
        webbrowser.open(url)
        print("\nAuthorize the app on Flickr, then copy the verification code.")

        verifier = input("\n🔢 Verification code: ").strip()
        if not verifier:
            logger.error("❌ Verification code required.")
            return 1
        try:
            auth.set_verifier(verifier)
        except (flickr_api.auth.AuthHandlerError, flickrerrors.FlickrError,
                requests.RequestException) as e:
            logger.error(f"❌ Authorization failed: {e}")
            return 1

        creds['token'] = auth.access_token_key
        creds['token_secret'] = auth.access_token_secret
        save_config(path, config)
        logger.info(f"✓ Token saved to {path}")

    services.config = config
    user = services.make_client().login()
    logger.info(f"✅ Logged in as {user['username']} ({user['id']})")
    return 0


def cmd_albums(args, services: Services) -> int:
    """Print every album title with its item count."""
    walker = CatalogWalker(services.make_client(), services.token, services.logger)
    for album in sorted(walker.fetch_albums(), key=lambda a: a.title):
        if services.token.cancelled:
            break
        print(f"{album.title} ({album.total})")
    return services.token.count


def cmd_files(args, services: Services) -> int:
    """Print the photos of the selected albums, page by page."""
    walker = CatalogWalker(services.make_client(), services.token, services.logger)
    for album in walker.select_albums(walker.fetch_albums(), args.albums):
        if services.token.cancelled:
            break
        print(f"📁 {album.title} ({album.total})")
        for page, pages, photo in walker.iter_album_photos(album):
            print(f"  {page}/{pages} {photo['id']} {unwrap(photo.get('title'))}")
    return services.token.count


def cmd_download(args, services: Services) -> int:
    """Download albums by title, or everything into ID directories with --id-dirs."""
    token, logger = services.token, services.logger
    client = services.make_client()
    walker = CatalogWalker(client, token, logger)
    engine = services.make_engine(client)

    destination = Path(args.destination)
    destination.mkdir(parents=True, exist_ok=True)
    albums = walker.fetch_albums()

    if args.id_dirs:
        if args.albums:
            logger.warning("⚠️  Album names are ignored with --id-dirs")
        exporter = MetadataExporter(client, logger)
        count = download_by_id(walker, engine, exporter, albums, destination,
                               args.force, services.failed)
    else:
        selected = walker.select_albums(albums, args.albums)
        if args.albums and not selected:
            logger.warning(f"⚠️  No album matches {', '.join(args.albums)}")
        count = download_by_album(walker, engine, selected, destination, args.force)

    logger.info(f"[main] total downloaded: {format_bytes(engine.bytes_total)}")
    logger.info(f"[main] total files: {count}")
    return token.count


def download_by_album(walker: CatalogWalker, engine: TransferEngine, albums: list,
                      destination: Path, force: bool = False) -> int:
    """DEST/<album title>/<photo title or id>.<format>"""
    count = 0
    for album in albums:
        if walker.token.cancelled:
            break
        album_dir = destination / safe_filename(album.title)
        album_dir.mkdir(parents=True, exist_ok=True)
        walker.logger.info(f"📁 {album.title} ({album.total})")
        for _, _, photo in walker.iter_album_photos(album):
            task = TransferTask(source=photo['id'], destination=album_dir,
                                secret=photo.get('secret'))
            if engine.download(task, force=force).ok:
                count += 1
    return count


def download_by_id(walker: CatalogWalker, engine: TransferEngine, exporter: MetadataExporter,
                   albums: list, destination: Path, force: bool = False,
                   failed: logging.Logger = None) -> int:
    """DEST/<md5[0:2]>/<md5[2:4]>/<id>/<id>.<format> plus <id>.yml, each photo once."""
    logger = walker.logger

    def candidates():
        yield from walker.iter_not_in_set()
        for album in albums:
            if walker.token.cancelled:
                return
            logger.info(f"📁 {album.title} ({album.total})")
            yield from walker.iter_album_photos(album)

    seen = set()
    count = 0
    for _, _, photo in candidates():
        photo_id = str(photo['id'])
        if photo_id in seen:
            continue
        seen.add(photo_id)

        target = id_shard_dir(destination, photo_id)
        target.mkdir(parents=True, exist_ok=True)
        task = TransferTask(source=photo_id, destination=target,
                            secret=photo.get('secret'), basename=photo_id)
        outcome = engine.download(task, force=force)
        if outcome.status is TransferStatus.FAILED:
            continue
        if outcome.ok:
            count += 1

        if outcome.ok or not (target / f"{photo_id}.yml").exists():
            try:
                exporter.export(outcome.item, target)
            except (FlickrError, OSError, yaml.YAMLError) as e:
                logger.error(f"✗ {photo_id}: metadata: {e}")
                if failed is not None:
                    failed.info(photo_id)
    return count


def cmd_upload(args, services: Services) -> int:
    """Upload files from the given directories, optionally into albums."""
    token, logger = services.token, services.logger
    client = services.make_client()
    walker = CatalogWalker(client, token, logger)

    files = walker.collect_local_files(args.directories, recursive=args.recursive)
    if not files:
        logger.warning("❌ No files found")
        return token.count

    titles = split_csv(args.sets)
    reconciler = None
    if titles and not args.dry_run:
        reconciler = AlbumReconciler(client, walker.fetch_albums(), titles, logger)
        if reconciler.pending:
            logger.info(f"📁 New albums: {', '.join(reconciler.pending)}")

    tags = format_tags(split_csv(args.tags))
    move_dir = resolve_move_dir(args.move, services.config_path)
    engine = services.make_engine(client)

    logger.info(f"📤 Uploading {len(files)} files")
    uploaded = 0
    for root, path in files:
        if token.cancelled:
            break
        task = TransferTask(
            source=path,
            destination=titles,
            relative_dir=Path(str(root).replace('/', '_')) / path.parent.relative_to(root),
        )
        outcome = engine.upload(task, description=args.description or '', tags=tags,
                                dry_run=args.dry_run, move_dir=move_dir)
        if not outcome.ok:
            continue
        uploaded += 1
        if reconciler is not None:
            try:
                reconciler.after_upload(outcome.photo_id)
            except ReconciliationError as e:
                logger.error(f"❌ {e}")
                return 1

    logger.info(f"✅ Uploaded: {uploaded} of {len(files)} ({format_bytes(engine.bytes_total)})")
    return token.count


def resolve_move_dir(move: str, config_path: Path) -> Optional[Path]:
    """Relative move directories live next to the config file."""
    if not move:
        return None
    move = Path(move)
    if move.is_absolute():
        return move
    return Path(config_path).parent / move


def cmd_delete(args, services: Services) -> int:
    """Delete every photo of the selected albums."""
    token, logger = services.token, services.logger
    client = services.make_client()
    walker = CatalogWalker(client, token, logger)

    albums = walker.select_albums(walker.fetch_albums(), args.albums)
    if not albums:
        logger.warning(f"⚠️  No album matches {', '.join(args.albums)}")
        return token.count

    # Collect first: deleting while paging would shift later photos onto pages already read.
    photo_ids = {}
    for album in albums:
        if token.cancelled:
            break
        logger.info(f"📁 {album.title} ({album.total})")
        for _, _, photo in walker.iter_album_photos(album):
            photo_ids[str(photo['id'])] = album.title

    deleted = 0
    for photo_id, title in photo_ids.items():
        if token.cancelled:
            break
        try:
            client.call('flickr.photos.delete', photo_id=photo_id)
        except FlickrError as e:
            logger.error(f"✗ {photo_id}: {e}")
            services.failed.info(photo_id)
            continue
        deleted += 1
        logger.info(f"🗑️  {photo_id} ({title})")

    logger.info(f"✅ Deleted: {deleted} of {len(photo_ids)}")
    return token.count


def cmd_checksums(args, services: Services) -> int:
    """Tag every photo with checksum:<algo>=<hex>; optionally report duplicates."""
    token, logger = services.token, services.logger
    algorithm = args.hash.lower()
    # shake_* digests need an explicit length
    if algorithm not in hashlib.algorithms_available or algorithm.startswith('shake'):
        logger.error(f"❌ Unknown hash algorithm: {args.hash}")
        return 1

    client = services.make_client()
    walker = CatalogWalker(client, token, logger)
    engine = services.make_engine(client)
    pattern = re.compile(rf'checksum:{re.escape(algorithm)}=(\S+)')
    workdir = Path(tempfile.mkdtemp(prefix='flickr-cli-'))
    tagged = 0
    try:
        for page, pages, photo in walker.iter_my_photos(extras='machine_tags'):
            photo_id = str(photo['id'])
            match = pattern.search(photo.get('machine_tags') or '')
            if match:
                tag = f"checksum:{algorithm}={match.group(1)}"
                logger.debug(f"⏭️  {photo_id} {tag}")
            else:
                task = TransferTask(source=photo_id, destination=workdir,
                                    secret=photo.get('secret'), basename='checksumming')
                outcome = engine.download(task, force=True)
                if not outcome.ok:
                    continue
                digest = file_digest(outcome.path, algorithm)
                _discard(outcome.path)
                tag = f"checksum:{algorithm}={digest}"
                try:
                    client.call('flickr.photos.addTags', photo_id=photo_id, tags=tag)
                except FlickrError as e:
                    logger.error(f"✗ {photo_id}: {e}")
                    services.failed.info(photo_id)
                    continue
                tagged += 1
                logger.info(f"🏷️  [{page}/{pages}] {photo_id} {tag}")

            if args.duplicates:
                report_duplicates(client, photo_id, tag, logger)
    finally:
        shutil.rmtree(workdir, ignore_errors=True)

    logger.info(f"✅ Tagged: {tagged}")
    return token.count


def report_duplicates(client, photo_id: str, tag: str, logger: logging.Logger) -> int:
    """Warn when more than one photo carries the same checksum tag."""
    try:
        data = client.call('flickr.photos.search', user_id='me', machine_tags=tag)
    except FlickrError as e:
        logger.error(f"✗ {photo_id}: duplicate search: {e}")
        return 0
    total = _int((data.get('photos') or {}).get('total'))
    if total > 1:
        logger.warning(f"⚠️  {photo_id} has {total - 1} duplicate(s): {TAG_URL.format(tag=tag)}")
    return total


# ============== CLI ==============

COMMANDS = {
    'auth': cmd_auth,
    'albums': cmd_albums,
    'files': cmd_files,
    'download': cmd_download,
    'upload': cmd_upload,
    'delete': cmd_delete,
    'checksums': cmd_checksums,
}


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument('-c', '--config', type=Path, metavar='PATH',
                        help=f'Config file (default: ./config.yml or ${CONFIG_ENV})')
    common.add_argument('-l', '--log', type=Path, metavar='DIR', default=DEFAULT_LOG_DIR,
                        help='Log directory (default: ./log)')
    common.add_argument('-q', '--quiet', action='store_true', help='Quiet mode (errors only)')
    common.add_argument('-v', '--verbose', action='store_true', help='Verbose mode (debug output)')

    parser = argparse.ArgumentParser(prog='flickrcli', description=f'flickrcli v{VERSION}')
    subparsers = parser.add_subparsers(dest='command', help='Commands')

    auth_parser = subparsers.add_parser('auth', parents=[common], help='Authorize with Flickr')
    auth_parser.add_argument('-f', '--force', action='store_true',
                             help='Authorize again even if a token exists')

    subparsers.add_parser('albums', parents=[common], help='List albums')

    files_parser = subparsers.add_parser('files', parents=[common], help='List photos per album')
    files_parser.add_argument('albums', nargs='+', metavar='ALBUM', help='Album title or glob')

    dl_parser = subparsers.add_parser('download', parents=[common], help='Download albums')
    dl_parser.add_argument('-d', '--destination', type=Path, default=DEFAULT_DESTINATION,
                           help='Destination directory (default: ./photosets)')
    dl_parser.add_argument('--id-dirs', action='store_true',
                           help='Store every photo under hashed ID directories with metadata')
    dl_parser.add_argument('-f', '--force', action='store_true',
                           help='Download even if the file exists')
    dl_parser.add_argument('albums', nargs='*', metavar='ALBUM',
                           help='Album titles or globs (default: all)')

    up_parser = subparsers.add_parser('upload', parents=[common], help='Upload directories')
    up_parser.add_argument('--description', help='Description for every photo')
    up_parser.add_argument('-t', '--tags', help='Tags (comma-separated)')
    up_parser.add_argument('-s', '--sets', help='Album titles (comma-separated, created if missing)')
    up_parser.add_argument('-r', '--recursive', action='store_true', help='Descend into subdirectories')
    up_parser.add_argument('--dry-run', action='store_true', help='Show what would be uploaded')
    up_parser.add_argument('-m', '--move', metavar='DIR',
                           help='Move uploaded files here (relative to the config file)')
    up_parser.add_argument('directories', nargs='+', type=Path, metavar='DIRECTORY')

    del_parser = subparsers.add_parser('delete', parents=[common], help='Delete photos of albums')
    del_parser.add_argument('albums', nargs='+', metavar='ALBUM', help='Album title or glob')

    sum_parser = subparsers.add_parser('checksums', parents=[common],
                                       help='Tag photos with content checksums')
    sum_parser.add_argument('--hash', default='sha1', help='hashlib algorithm (default: sha1)')
    sum_parser.add_argument('--duplicates', action='store_true',
                            help='Report photos sharing a checksum')

    return parser


def main(argv=None, client_factory: Callable[[dict], object] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 1

    if args.quiet:
        level = OutputLevel.QUIET
    elif args.verbose:
        level = OutputLevel.VERBOSE
    else:
        level = OutputLevel.NORMAL
    logger, failed = setup_logging(args.command, args.log, level)

    config_path = args.config or default_config_path()
    config = {}
    if args.command != 'auth':
        try:
            config = load_config(config_path)
        except ConfigError as e:
            logger.error(f"❌ {e}")
            logger.error("   Run: flickrcli auth")
            return 1

    token = CancellationToken(logger)
    services = Services(
        config_path=config_path,
        config=config,
        logger=logger,
        failed=failed,
        token=token,
        client_factory=client_factory or FlickrClient.from_config,
        show_progress=level != OutputLevel.QUIET,
    )
    token.install()
    try:
        return COMMANDS[args.command](args, services)
    except FlickrCliError as e:
        logger.error(f"❌ {e}")
        return 1
    finally:
        token.restore()


if __name__ == '__main__':
    sys.exit(main())
