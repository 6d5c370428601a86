"""
PostgreSQL-backed key-path document store for the AquaHost platform
Direct psycopg2 connections with raw SQL, plus an in-process store for development and tests
"""

import os
import asyncio
import copy
import logging
import secrets
import threading
import time
from typing import Any, Dict, List, Optional

import psycopg2
import psycopg2.errors
import psycopg2.pool
from psycopg2.extras import Json, RealDictCursor

from services.errors import DependencyTimeout, StoreUnavailable

logger = logging.getLogger(__name__)

_connection_pool = None
_pool_lock = threading.Lock()
_last_pool_recreation = 0.0

_document_store = None

# Statement timeout keeps a stuck query from holding a request forever
STATEMENT_TIMEOUT_MS = int(os.getenv('DATABASE_STATEMENT_TIMEOUT_MS', '10000'))

_DEAD_CONNECTION_MARKERS = ('connection closed', 'server closed', 'ssl connection', 'timeout', 'broken pipe')


def _connect_kwargs() -> Dict[str, Any]:
    return {
        'cursor_factory': RealDictCursor,
        'connect_timeout': 5,
        'keepalives_idle': 600,
        'keepalives_interval': 30,
        'keepalives_count': 3,
        'sslmode': os.getenv('DATABASE_SSLMODE', 'prefer'),
        'options': f'-c statement_timeout={STATEMENT_TIMEOUT_MS}',
    }


def get_connection_pool():
    """Get or create the database connection pool"""
    global _connection_pool
    if _connection_pool is None:
        with _pool_lock:
            if _connection_pool is None:
                database_url = os.getenv('DATABASE_URL')
                if not database_url:
                    raise StoreUnavailable("DATABASE_URL environment variable not found")
                try:
                    _connection_pool = psycopg2.pool.ThreadedConnectionPool(
                        minconn=int(os.getenv('DATABASE_POOL_MIN', '2')),
                        maxconn=int(os.getenv('DATABASE_POOL_MAX', '50')),
                        dsn=database_url,
                        **_connect_kwargs()
                    )
                    logger.info("✅ Database connection pool created")
                except psycopg2.Error as e:
                    logger.error(f"❌ Failed to create connection pool: {e}")
                    raise StoreUnavailable(details={'error': str(e)})
    return _connection_pool


def recreate_connection_pool() -> bool:
    """Recreate the connection pool to recover from dead connections"""
    global _connection_pool, _last_pool_recreation

    current_time = time.time()
    # Rate limiting: at most once every 10 seconds
    if current_time - _last_pool_recreation < 10:
        logger.debug("🔄 Pool recreation rate limited - skipping")
        return False

    with _pool_lock:
        if _connection_pool is not None:
            try:
                _connection_pool.closeall()
            except psycopg2.Error as e:
                logger.warning(f"⚠️ Error closing old connection pool: {e}")
            _connection_pool = None
        _last_pool_recreation = current_time

    try:
        get_connection_pool()
        logger.info("✅ Connection pool recreated")
        return True
    except StoreUnavailable:
        logger.error("❌ Connection pool recreation failed")
        return False


def get_connection():
    """Get a pooled connection in autocommit mode"""
    pool = get_connection_pool()
    try:
        conn = pool.getconn()
    except psycopg2.pool.PoolError as e:
        logger.error(f"❌ Connection pool exhausted: {e}")
        raise StoreUnavailable(details={'error': str(e)})
    conn.autocommit = True
    return conn


def return_connection(conn, is_broken: bool = False):
    """Return a connection to the pool, closing it if broken"""
    try:
        get_connection_pool().putconn(conn, close=is_broken)
    except (psycopg2.Error, StoreUnavailable) as e:
        logger.warning(f"⚠️ Could not return connection to pool: {e}")
        try:
            conn.close()
        except psycopg2.Error:
            pass


def _translate_db_error(error: Exception, operation: str) -> Exception:
    if isinstance(error, psycopg2.errors.QueryCanceled):
        logger.error(f"⏱️ Database {operation} timed out after {STATEMENT_TIMEOUT_MS}ms")
        return DependencyTimeout(details={'operation': operation})
    logger.error(f"❌ Database {operation} failed: {error}")
    return StoreUnavailable(details={'operation': operation, 'error': str(error)})


async def execute_query(query: str, params: Optional[Any] = None) -> List[Dict]:
    """Execute a SELECT query and return rows, retrying on dead connections"""

    def _execute() -> List[Dict]:
        max_retries = 3
        for attempt in range(max_retries):
            conn = None
            try:
                conn = get_connection()
                with conn.cursor() as cursor:
                    cursor.execute(query, params)
                    results = cursor.fetchall()
                    return [dict(row) for row in results] if results else []
            except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
                if conn:
                    return_connection(conn, is_broken=True)
                    conn = None
                if isinstance(e, psycopg2.errors.QueryCanceled):
                    raise _translate_db_error(e, 'query')
                if any(marker in str(e).lower() for marker in _DEAD_CONNECTION_MARKERS):
                    logger.warning(f"🔄 Detected dead connection, recreating pool: {e}")
                    recreate_connection_pool()
                if attempt < max_retries - 1:
                    logger.warning(f"Database connection retry {attempt + 1}/{max_retries}: {e}")
                    time.sleep(0.5 + (attempt * 0.5))
                    continue
                raise _translate_db_error(e, 'query')
            except psycopg2.Error as e:
                raise _translate_db_error(e, 'query')
            finally:
                if conn:
                    return_connection(conn)
        raise StoreUnavailable(details={'operation': 'query'})

    return await asyncio.to_thread(_execute)


async def execute_update(query: str, params: Optional[Any] = None) -> int:
    """Execute an INSERT/UPDATE/DELETE and return affected rows (no retries to prevent duplicates)"""

    def _execute() -> int:
        conn = None
        try:
            conn = get_connection()
            with conn.cursor() as cursor:
                cursor.execute(query, params)
                return cursor.rowcount
        except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
            if conn:
                return_connection(conn, is_broken=True)
                conn = None
            if any(marker in str(e).lower() for marker in _DEAD_CONNECTION_MARKERS):
                logger.warning(f"🔄 Detected dead connection on update, recreating pool: {e}")
                recreate_connection_pool()
            raise _translate_db_error(e, 'update')
        except psycopg2.Error as e:
            raise _translate_db_error(e, 'update')
        finally:
            if conn:
                return_connection(conn)

    return await asyncio.to_thread(_execute)


# ====================================================================
# KEY-PATH DOCUMENT STORE
# ====================================================================

_FORBIDDEN_KEY_CHARS = set('.#$[]')
_PUSH_CHARS = '-0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ_abcdefghijklmnopqrstuvwxyz'


def normalize_path(path: str) -> str:
    """Validate a slash-separated document path and return it without stray slashes"""
    segments = [segment for segment in str(path).split('/') if segment]
    if not segments:
        raise ValueError("Document path must not be empty")
    for segment in segments:
        if _FORBIDDEN_KEY_CHARS & set(segment):
            raise ValueError(f"Invalid character in path segment: {segment!r}")
    return '/'.join(segments)


def is_valid_key(segment) -> bool:
    """True when segment can be used as a single path key"""
    if not isinstance(segment, str) or not segment.strip() or segment != segment.strip():
        return False
    return '/' not in segment and not (_FORBIDDEN_KEY_CHARS & set(segment))


def split_path(path: str):
    """Return (parent, key) for a normalized path"""
    normalized = normalize_path(path)
    if '/' not in normalized:
        return '', normalized
    parent, key = normalized.rsplit('/', 1)
    return parent, key


def encode_key(value: str) -> str:
    """Encode an arbitrary string (e.g. a hostname) for use as a path segment"""
    encoded = str(value).strip().lower().replace('%', '%25').replace('.', ',').replace('/', '%2F')
    for char in '#$[]':
        encoded = encoded.replace(char, f'%{ord(char):02X}')
    return encoded


def generate_push_key() -> str:
    """
    Generate an opaque, time-ordered unique key.

    8 characters of millisecond timestamp followed by 12 random characters;
    never derived from caller input.
    """
    now_ms = int(time.time() * 1000)
    timestamp_chars = []
    for _ in range(8):
        timestamp_chars.append(_PUSH_CHARS[now_ms % 64])
        now_ms //= 64
    random_chars = ''.join(secrets.choice(_PUSH_CHARS) for _ in range(12))
    return ''.join(reversed(timestamp_chars)) + random_chars


class DocumentStore:
    """
    Async key-path document store.

    Every write touches exactly one key; there are no multi-key transactions.
    create_if_absent and remove_if_match are the only compare-and-set primitives.
    """

    backend_name = 'abstract'

    async def get(self, path: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    async def list_children(self, path: str) -> Dict[str, Dict[str, Any]]:
        raise NotImplementedError

    async def query_by_child(self, path: str, field: str, value: Any) -> Dict[str, Dict[str, Any]]:
        raise NotImplementedError

    async def list_child_keys(self, path: str) -> List[str]:
        """Keys directly under path that hold a document or have descendants"""
        raise NotImplementedError

    async def set(self, path: str, data: Dict[str, Any]) -> None:
        raise NotImplementedError

    async def update(self, path: str, changes: Dict[str, Any]) -> None:
        raise NotImplementedError

    async def remove(self, path: str) -> bool:
        raise NotImplementedError

    async def create_if_absent(self, path: str, data: Dict[str, Any]) -> bool:
        raise NotImplementedError

    async def remove_if_match(self, path: str, field: str, value: Any) -> bool:
        """Delete one document only while data[field] still equals value"""
        raise NotImplementedError

    async def push_key(self, path: str) -> str:
        normalize_path(path)
        return generate_push_key()

    async def init(self) -> None:
        """Prepare backing storage"""

    async def ping(self) -> bool:
        return True


class PostgresDocumentStore(DocumentStore):
    """Document store on a single JSONB table"""

    backend_name = 'postgres'

    async def init(self) -> None:
        await execute_update("""
            CREATE TABLE IF NOT EXISTS documents (
                path TEXT PRIMARY KEY,
                parent TEXT NOT NULL,
                key TEXT NOT NULL,
                data JSONB NOT NULL,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)
        await execute_update("CREATE INDEX IF NOT EXISTS idx_documents_parent ON documents(parent)")
        # Expression indexes for the fields the workflow looks up by value
        await execute_update(
            "CREATE INDEX IF NOT EXISTS idx_documents_service_id ON documents(parent, (data->>'serviceId'))"
        )
        await execute_update(
            "CREATE INDEX IF NOT EXISTS idx_documents_subdomain ON documents(parent, (data->>'subdomain'))"
        )
        logger.info("✅ Document store tables initialized")

    async def get(self, path: str) -> Optional[Dict[str, Any]]:
        rows = await execute_query("SELECT data FROM documents WHERE path = %s", (normalize_path(path),))
        return rows[0]['data'] if rows else None

    async def list_children(self, path: str) -> Dict[str, Dict[str, Any]]:
        rows = await execute_query(
            "SELECT key, data FROM documents WHERE parent = %s ORDER BY key",
            (normalize_path(path),)
        )
        return {row['key']: row['data'] for row in rows}

    async def query_by_child(self, path: str, field: str, value: Any) -> Dict[str, Dict[str, Any]]:
        rows = await execute_query(
            "SELECT key, data FROM documents WHERE parent = %s AND data->>%s = %s ORDER BY key",
            (normalize_path(path), field, _as_text(value))
        )
        return {row['key']: row['data'] for row in rows}

    async def list_child_keys(self, path: str) -> List[str]:
        prefix = normalize_path(path) + '/'
        rows = await execute_query("""
            SELECT DISTINCT split_part(substr(path, %s), '/', 1) AS child
            FROM documents
            WHERE path LIKE %s
            ORDER BY child
        """, (len(prefix) + 1, _like_prefix(prefix)))
        return [row['child'] for row in rows if row['child']]

    async def set(self, path: str, data: Dict[str, Any]) -> None:
        normalized = normalize_path(path)
        parent, key = split_path(normalized)
        await execute_update("""
            INSERT INTO documents (path, parent, key, data)
            VALUES (%s, %s, %s, %s)
            ON CONFLICT (path) DO UPDATE
            SET data = EXCLUDED.data, updated_at = CURRENT_TIMESTAMP
        """, (normalized, parent, key, Json(data)))

    async def update(self, path: str, changes: Dict[str, Any]) -> None:
        normalized = normalize_path(path)
        parent, key = split_path(normalized)
        await execute_update("""
            INSERT INTO documents (path, parent, key, data)
            VALUES (%s, %s, %s, %s)
            ON CONFLICT (path) DO UPDATE
            SET data = documents.data || EXCLUDED.data, updated_at = CURRENT_TIMESTAMP
        """, (normalized, parent, key, Json(changes)))

    async def remove(self, path: str) -> bool:
        normalized = normalize_path(path)
        affected = await execute_update(
            "DELETE FROM documents WHERE path = %s OR path LIKE %s",
            (normalized, _like_prefix(normalized + '/'))
        )
        return affected > 0

    async def create_if_absent(self, path: str, data: Dict[str, Any]) -> bool:
        normalized = normalize_path(path)
        parent, key = split_path(normalized)
        affected = await execute_update("""
            INSERT INTO documents (path, parent, key, data)
            VALUES (%s, %s, %s, %s)
            ON CONFLICT (path) DO NOTHING
        """, (normalized, parent, key, Json(data)))
        return affected == 1

    async def remove_if_match(self, path: str, field: str, value: Any) -> bool:
        affected = await execute_update(
            "DELETE FROM documents WHERE path = %s AND data->>%s = %s",
            (normalize_path(path), field, _as_text(value))
        )
        return affected > 0

    async def ping(self) -> bool:
        try:
            await execute_query("SELECT 1 AS ok")
            return True
        except (StoreUnavailable, DependencyTimeout):
            return False


class MemoryDocumentStore(DocumentStore):
    """In-process document store with the same semantics as the Postgres backend"""

    backend_name = 'memory'

    def __init__(self, initial: Optional[Dict[str, Dict[str, Any]]] = None):
        self._documents: Dict[str, Dict[str, Any]] = {}
        self._lock = asyncio.Lock()
        for path, data in (initial or {}).items():
            self._documents[normalize_path(path)] = copy.deepcopy(data)

    async def get(self, path: str) -> Optional[Dict[str, Any]]:
        data = self._documents.get(normalize_path(path))
        return copy.deepcopy(data) if data is not None else None

    async def list_children(self, path: str) -> Dict[str, Dict[str, Any]]:
        parent = normalize_path(path)
        children = {}
        for doc_path in sorted(self._documents):
            doc_parent, key = split_path(doc_path)
            if doc_parent == parent:
                children[key] = copy.deepcopy(self._documents[doc_path])
        return children

    async def query_by_child(self, path: str, field: str, value: Any) -> Dict[str, Dict[str, Any]]:
        children = await self.list_children(path)
        expected = _as_text(value)
        return {
            key: data for key, data in children.items()
            if field in data and _as_text(data[field]) == expected
        }

    async def list_child_keys(self, path: str) -> List[str]:
        prefix = normalize_path(path) + '/'
        children = {doc_path[len(prefix):].split('/', 1)[0]
                    for doc_path in self._documents if doc_path.startswith(prefix)}
        return sorted(children)

    async def set(self, path: str, data: Dict[str, Any]) -> None:
        async with self._lock:
            self._documents[normalize_path(path)] = copy.deepcopy(data)

    async def update(self, path: str, changes: Dict[str, Any]) -> None:
        normalized = normalize_path(path)
        async with self._lock:
            current = self._documents.get(normalized, {})
            current.update(copy.deepcopy(changes))
            self._documents[normalized] = current

    async def remove(self, path: str) -> bool:
        normalized = normalize_path(path)
        async with self._lock:
            doomed = [p for p in self._documents if p == normalized or p.startswith(normalized + '/')]
            for doc_path in doomed:
                del self._documents[doc_path]
            return bool(doomed)

    async def create_if_absent(self, path: str, data: Dict[str, Any]) -> bool:
        normalized = normalize_path(path)
        async with self._lock:
            if normalized in self._documents:
                return False
            self._documents[normalized] = copy.deepcopy(data)
            return True

    async def remove_if_match(self, path: str, field: str, value: Any) -> bool:
        normalized = normalize_path(path)
        async with self._lock:
            current = self._documents.get(normalized)
            if current is None or field not in current or _as_text(current[field]) != _as_text(value):
                return False
            del self._documents[normalized]
            return True

    def dump(self) -> Dict[str, Dict[str, Any]]:
        """Snapshot of every document, for diagnostics and tests"""
        return copy.deepcopy(self._documents)


def _as_text(value: Any) -> str:
    # Matches Postgres data->>'field' rendering for the scalar types we store
    if isinstance(value, bool):
        return 'true' if value else 'false'
    return str(value)


def _like_prefix(prefix: str) -> str:
    escaped = prefix.replace('\\', '\\\\').replace('%', '\\%').replace('_', '\\_')
    return escaped + '%'


def get_document_store() -> DocumentStore:
    """Get or create the process-wide document store"""
    global _document_store
    if _document_store is None:
        backend = os.getenv('DOCUMENT_STORE_BACKEND')
        if not backend:
            backend = 'postgres' if os.getenv('DATABASE_URL') else 'memory'
        if backend.lower() == 'postgres':
            _document_store = PostgresDocumentStore()
        else:
            logger.warning("⚠️ Using in-memory document store - data will not survive a restart")
            _document_store = MemoryDocumentStore()
        logger.info(f"✅ Document store backend: {_document_store.backend_name}")
    return _document_store


def set_document_store(store: Optional[DocumentStore]) -> None:
    """Replace the process-wide document store (used by tests and embedding apps)"""
    global _document_store
    _document_store = store


async def init_database() -> DocumentStore:
    """Initialize the configured document store"""
    store = get_document_store()
    await store.init()
    return store
