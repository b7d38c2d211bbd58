"""
MongoDB dump/restore executor.

Runs the external mongodump/mongorestore tools as subprocesses and turns
their exit status and output into structured results:
- Argument vectors are built explicitly and never pass through a shell
- The connection URI travels in a private --config file, not in argv
- Captured output is spooled to temp files and read back up to a cap
- Progress text is only a hint; the dump directory (after dump) and the
  live database (after restore) are the authoritative sources
"""

import json
import logging
import os
import re
import subprocess
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass, field
from fnmatch import fnmatch
from pathlib import Path
from typing import List, Optional, Tuple

from .compression import format_bytes


logger = logging.getLogger(__name__)

MAX_OUTPUT_BYTES = 50 * 1024 * 1024
ERROR_SNIPPET_LENGTH = 300
INSERTION_WORKERS_PER_COLLECTION = 4

_URI_PATTERN = re.compile(r'^(mongodb(?:\+srv)?://[^/?]+)(?:/([^?]*))?(\?.*)?$')
_CREDENTIALS_PATTERN = re.compile(r'(://[^:/@]+):([^@/]+)@')

# (stderr needle, reason, message) - first match wins
ERROR_CLASSIFIERS = [
    ('authentication failed', 'authentication', 'MongoDB authentication failed'),
    ('bad auth', 'authentication', 'MongoDB authentication error - check credentials'),
    ('network error', 'network', 'Network connection failed'),
    ('server selection error', 'network', 'Network connection failed (server selection)'),
    ('connection refused', 'network', 'Network connection failed (connection refused)'),
    ('no reachable servers', 'network', 'Network connection failed (no reachable servers)'),
    ('namespace exists', 'namespace_exists', 'Collection already exists (use --drop)'),
    ('duplicate key error', 'duplicate_key', 'Duplicate key (use --drop)'),
    ('error parsing uri', 'uri_parse', 'URI parsing error'),
    ('not found', 'not_found', 'Database/collection not found'),
]


class MongoToolError(Exception):
    """Raised when an external MongoDB tool fails."""

    operation = 'MongoDB tool'

    def __init__(self, reason: str, detail: str, returncode: Optional[int] = None):
        self.reason = reason
        self.detail = detail
        self.returncode = returncode
        super().__init__(f"{self.operation} failed: {detail}")


class DumpError(MongoToolError):
    """Raised when mongodump fails."""
    operation = 'MongoDB dump'


class RestoreError(MongoToolError):
    """Raised when mongorestore fails or its result cannot be counted."""
    operation = 'MongoDB restore'


@dataclass
class DumpResult:
    collections: List[str]
    total_size_bytes: int
    file_count: int
    raw_output: str = ''

    @property
    def total_size(self) -> str:
        return format_bytes(self.total_size_bytes)


@dataclass
class RestoreOptions:
    """Options for one mongorestore run."""
    source_database: str
    target_database: Optional[str] = None
    drop: bool = False
    preserve_ids: bool = True
    ns_from: Optional[str] = None
    ns_to: Optional[str] = None
    ns_include: Optional[str] = None

    @property
    def target(self) -> str:
        """Database that receives the data: the db of ns_to, then the explicit target, then the source."""
        if self.ns_from and self.ns_to:
            return _split_namespace(self.ns_to)[0]
        return self.target_database or self.source_database

    @property
    def target_namespace(self) -> Optional[str]:
        """Namespace pattern the restored collections end up under, if restricted."""
        if self.ns_from and self.ns_to:
            return self.ns_to
        if self.ns_include:
            return f"{self.target}.{_split_namespace(self.ns_include)[1]}"
        return None


def _split_namespace(namespace: str) -> Tuple[str, str]:
    database, _, collection = namespace.partition('.')
    return database, collection or '*'


@dataclass
class CollectionResult:
    name: str
    document_count: int
    status: str

    def to_dict(self):
        return {
            'name': self.name,
            'document_count': self.document_count,
            'status': self.status
        }


@dataclass
class RestoreOutcome:
    collections: List[CollectionResult] = field(default_factory=list)
    raw_output: str = ''

    @property
    def total_documents(self) -> int:
        return sum(c.document_count for c in self.collections if c.status == 'success')


def classify_tool_error(stderr: str) -> Tuple[str, str]:
    """
    Classify a tool failure from its stderr text.

    Returns:
        Tuple of (reason, human readable message)
    """
    text = (stderr or '').strip()
    lowered = text.lower()

    for needle, reason, message in ERROR_CLASSIFIERS:
        if needle in lowered:
            return reason, message

    return 'unclassified', text[:ERROR_SNIPPET_LENGTH] or 'no error output'


def extract_database_name(uri: Optional[str], override: Optional[str] = None,
                          default: str = 'landing-template') -> str:
    """
    Resolve the database name for a connection string.

    An explicit override wins, then the path component of the URI, then
    the default.
    """
    if override:
        return override
    match = _URI_PATTERN.match(uri or '')
    if match and match.group(2):
        return match.group(2)
    return default


def build_database_uri(uri: str, database: str) -> str:
    """
    Rewrite the database path of a connection string, keeping its options.

    Raises:
        ValueError: If the URI is not a mongodb:// or mongodb+srv:// URI
    """
    match = _URI_PATTERN.match(uri or '')
    if not match:
        raise ValueError("Invalid MongoDB URI format")
    base_uri, _, options = match.groups()
    return f"{base_uri}/{database}{options or ''}"


def redact_uri(uri: str) -> str:
    """Mask the password of a connection string for logging."""
    return _CREDENTIALS_PATTERN.sub(r'\1:****@', uri or '')


def _dump_progress_patterns(database: str):
    db = re.escape(database)
    return [
        # "writing landing-template.projects to ..."
        re.compile(rf'writing\s+{db}\.([\w.-]+?)\s+to\b'),
        # "done dumping landing-template.projects (3 documents)"
        re.compile(rf'done dumping\s+{db}\.([\w.-]+?)\s+\('),
        # "landing-template.projects to ..."
        re.compile(rf'{db}\.([\w.-]+?)\s+to\b'),
    ]


def parse_dump_output(output: str, database: str) -> List[str]:
    """
    Recover collection names from mongodump progress text.

    Different tool versions phrase progress differently, so several
    patterns are tried per line.
    """
    collections = []
    patterns = _dump_progress_patterns(database)

    for line in (output or '').splitlines():
        if 'writing' not in line and 'done dumping' not in line:
            continue
        for pattern in patterns:
            match = pattern.search(line)
            if match:
                name = match.group(1)
                if not name.startswith('system.') and name not in collections:
                    collections.append(name)
                break

    return collections


def analyze_dump(output: str, output_dir: str, database: str) -> DumpResult:
    """
    Build a DumpResult from progress text, cross-checked with the dump directory.

    Collection names come from the text when it yields any, otherwise from
    the *.bson.gz files. Sizes and file counts always come from the files.
    """
    collections = parse_dump_output(output, database)
    db_path = Path(output_dir) / database

    gz_files = []
    if db_path.is_dir():
        gz_files = sorted(p for p in db_path.iterdir() if p.is_file() and p.name.endswith('.gz'))

    file_collections = [
        p.name[:-len('.bson.gz')] for p in gz_files if p.name.endswith('.bson.gz')
    ]

    if not collections:
        collections = list(file_collections)
    else:
        missing_files = [c for c in collections if c not in file_collections]
        if missing_files and gz_files:
            logger.warning(f"Dump output mentions collections without files: {', '.join(missing_files)}")
        for name in file_collections:
            if name not in collections:
                logger.warning(f"Collection {name} found on disk but not in dump output")
                collections.append(name)

    total_size = 0
    for path in gz_files:
        try:
            total_size += path.stat().st_size
        except OSError as e:
            logger.warning(f"Could not stat file {path.name}: {e}")

    return DumpResult(
        collections=collections,
        total_size_bytes=total_size,
        file_count=len(gz_files),
        raw_output=(output or '')[:500]
    )


def build_namespace_args(options: RestoreOptions) -> List[str]:
    """
    Build the namespace flags for mongorestore.

    Explicit ns_from/ns_to win; a lone ns_include restricts the restore to
    that namespace and renames it into the target database when that
    differs; otherwise the whole source database is mapped onto the target
    database (identity when they are equal).
    """
    if options.ns_from and options.ns_to:
        args = []
        if options.ns_include:
            args.append(f'--nsInclude={options.ns_include}')
        args.extend([f'--nsFrom={options.ns_from}', f'--nsTo={options.ns_to}'])
        return args

    if options.ns_include:
        args = [f'--nsInclude={options.ns_include}']
        if _split_namespace(options.ns_include)[0] != options.target:
            args.extend([f'--nsFrom={options.ns_include}', f'--nsTo={options.target_namespace}'])
        return args

    return [
        f'--nsInclude={options.source_database}.*',
        f'--nsFrom={options.source_database}.*',
        f'--nsTo={options.target}.*',
    ]


class MongoToolExecutor:
    """
    Invokes mongodump/mongorestore and translates their results.
    """

    def __init__(self, session=None, dump_bin: str = 'mongodump', restore_bin: str = 'mongorestore',
                 timeout: Optional[int] = None, max_output_bytes: int = MAX_OUTPUT_BYTES,
                 uri_via_config: bool = True):
        """
        Initialize the executor.

        Args:
            session: DatabaseSession used to count restored documents
            dump_bin: mongodump executable
            restore_bin: mongorestore executable
            timeout: Wall-clock limit in seconds per tool run (None = unbounded)
            max_output_bytes: Cap on captured stdout/stderr read back into memory
            uri_via_config: Pass the URI through a --config file instead of argv
        """
        self.session = session
        self.dump_bin = dump_bin
        self.restore_bin = restore_bin
        self.timeout = timeout
        self.max_output_bytes = max_output_bytes
        self.uri_via_config = uri_via_config

    @classmethod
    def from_config(cls, config, session=None):
        return cls(
            session=session,
            dump_bin=config.MONGODUMP_BIN,
            restore_bin=config.MONGORESTORE_BIN,
            timeout=config.MONGO_TOOLS_TIMEOUT,
            max_output_bytes=config.MONGO_TOOLS_MAX_OUTPUT_BYTES
        )

    def dump(self, connection_uri: str, output_dir: str, database: str) -> DumpResult:
        """
        Dump one database into output_dir/<database> as gzipped BSON.

        Raises:
            DumpError: If mongodump exits nonzero, times out or is missing
        """
        dump_uri = build_database_uri(connection_uri, database)

        with self._connection_args(dump_uri) as conn_args:
            argv = [self.dump_bin, *conn_args, f'--out={output_dir}', '--gzip', '--verbose']
            logger.info(f"Executing mongodump for database {database}: {self._describe(argv, dump_uri)}")
            stdout, stderr = self._run(argv, DumpError)

        result = analyze_dump(f"{stdout}\n{stderr}", output_dir, database)
        logger.info(
            f"mongodump completed: {len(result.collections)} collections, "
            f"{result.file_count} files, {result.total_size}"
        )
        return result

    def build_restore_args(self, source_dir: str, options: RestoreOptions) -> List[str]:
        """Build the mongorestore flags that follow the connection arguments."""
        args = [f'--dir={source_dir}', '--gzip']
        args.extend(build_namespace_args(options))
        if options.drop:
            args.append('--drop')
        if not options.preserve_ids:
            args.append('--noObjectIdCheck')
        args.append(f'--numInsertionWorkersPerCollection={INSERTION_WORKERS_PER_COLLECTION}')
        args.append('--stopOnError')
        return args

    def restore(self, connection_uri: str, source_dir: str, options: RestoreOptions) -> RestoreOutcome:
        """
        Restore a dump directory and count the result in the live database.

        Raises:
            RestoreError: If mongorestore fails or the target cannot be counted
        """
        target_uri = build_database_uri(connection_uri, options.target)

        with self._connection_args(target_uri) as conn_args:
            argv = [self.restore_bin, *conn_args, *self.build_restore_args(source_dir, options)]
            logger.info(
                f"Restoring {options.source_database} -> {options.target}: "
                f"{self._describe(argv, target_uri)}"
            )
            stdout, stderr = self._run(argv, RestoreError)

        collections = self.count_collections(options.target, options.target_namespace)
        outcome = RestoreOutcome(collections=collections, raw_output=f"{stdout}\n{stderr}"[:500])
        logger.info(
            f"mongorestore completed: {len(outcome.collections)} collections, "
            f"{outcome.total_documents} documents"
        )
        return outcome

    def count_collections(self, database: str, namespace: Optional[str] = None) -> List[CollectionResult]:
        """
        Count documents per collection of the target database.

        Raises:
            RestoreError: If no session is available or collections cannot be listed
        """
        if self.session is None:
            raise RestoreError('unverifiable', "No database session available to count restored documents")

        try:
            names = self.session.list_collections(database)
        except Exception as e:
            raise RestoreError('unverifiable', f"Could not list collections of {database}: {e}")

        pattern = _split_namespace(namespace)[1] if namespace else None

        results = []
        for name in names:
            if name.startswith('system.'):
                continue
            if pattern and not fnmatch(name, pattern):
                continue
            try:
                count = self.session.count_documents(database, name)
                results.append(CollectionResult(name, count, 'success'))
            except Exception as e:
                logger.warning(f"Could not count documents in {database}.{name}: {e}")
                results.append(CollectionResult(name, 0, 'error'))

        return results

    @contextmanager
    def _connection_args(self, uri: str):
        """Yield the argv fragment carrying the connection string."""
        if not self.uri_via_config:
            yield [f'--uri={uri}']
            return

        fd, path = tempfile.mkstemp(prefix='landkeeper-', suffix='.yaml')
        try:
            with os.fdopen(fd, 'w') as f:
                # A JSON string is a valid YAML double-quoted scalar
                f.write(f"uri: {json.dumps(uri)}\n")
            yield [f'--config={path}']
        finally:
            try:
                os.remove(path)
            except OSError:
                pass

    def _run(self, argv: List[str], error_cls) -> Tuple[str, str]:
        with tempfile.TemporaryFile() as out_file, tempfile.TemporaryFile() as err_file:
            try:
                completed = subprocess.run(
                    argv,
                    stdin=subprocess.DEVNULL,
                    stdout=out_file,
                    stderr=err_file,
                    timeout=self.timeout,
                    check=False
                )
            except FileNotFoundError:
                raise error_cls(
                    'tool_missing',
                    f"{argv[0]} not found. Ensure MongoDB database tools are installed."
                )
            except subprocess.TimeoutExpired:
                raise error_cls('timeout', f"{argv[0]} exceeded {self.timeout}s and was killed")

            stdout = self._read_capped(out_file)
            stderr = self._read_capped(err_file)

        if completed.returncode != 0:
            reason, message = classify_tool_error(stderr or stdout)
            raise error_cls(reason, message, returncode=completed.returncode)

        return stdout, stderr

    def _read_capped(self, handle) -> str:
        handle.seek(0)
        data = handle.read(self.max_output_bytes)
        return data.decode('utf-8', errors='replace')

    @staticmethod
    def _describe(argv: List[str], uri: str) -> str:
        command = ' '.join(argv)
        return command.replace(uri, redact_uri(uri))
