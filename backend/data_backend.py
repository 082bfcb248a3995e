"""
Backend-as-a-service access for the intake API and the session guard.

``SupabaseBackend`` talks to a hosted Supabase project (GoTrue for auth,
PostgREST for tables). ``SqliteBackend`` mirrors the same surface on a local
sqlite file so the service can run without a hosted project.
"""

from __future__ import annotations

import hashlib
import json
import logging
import secrets
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Protocol, Sequence, Tuple
from urllib import error as urlerror
from urllib import parse as urlparse
from urllib import request as urlrequest

logger = logging.getLogger(__name__)

ACCESS_TOKEN_TTL_SECONDS = 3600
PBKDF2_ITERATIONS = 120000
BOOLEAN_COLUMNS = {"is_active"}

# (columns, term): case-insensitive substring match on any of the columns.
SearchSpec = Tuple[Sequence[str], str]


class BackendError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class AuthError(BackendError):
    """The backend rejected a credential check or session token."""


class DataBackend(Protocol):
    """Operations the service needs from the hosted backend."""

    def sign_in_with_password(self, email: str, password: str) -> Dict[str, Any]:
        ...

    def get_user(self, access_token: str) -> Optional[Dict[str, Any]]:
        ...

    def sign_out(self, access_token: str) -> None:
        ...

    def create_auth_user(
        self,
        email: str,
        password: str,
        *,
        role: str,
        user_metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        ...

    def insert(self, table: str, record: Dict[str, Any]) -> Dict[str, Any]:
        ...

    def select(
        self,
        table: str,
        *,
        filters: Optional[Dict[str, Any]] = None,
        search: Optional[SearchSpec] = None,
        order_by: Optional[str] = "created_at",
        descending: bool = True,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        ...

    def get(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        ...

    def update(self, table: str, record_id: str, updates: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        ...

    def delete(self, table: str, record_id: str) -> bool:
        ...


def now_iso() -> str:
    return datetime.utcnow().isoformat()


def user_role(user: Optional[Dict[str, Any]]) -> Optional[str]:
    """Role claim of an auth user, app metadata first."""
    if not user:
        return None
    for key in ("app_metadata", "user_metadata"):
        metadata = user.get(key) or {}
        role = str(metadata.get("role") or "").strip().lower()
        if role:
            return role
    return None


def is_admin_user(user: Optional[Dict[str, Any]]) -> bool:
    if not user:
        return False
    for key in ("user_metadata", "app_metadata"):
        metadata = user.get(key) or {}
        if str(metadata.get("role") or "").strip().lower() == "admin":
            return True
    return False


# ----------------------
# Hosted backend
# ----------------------

def backend_error_message(detail: str, fallback: str) -> str:
    try:
        parsed = json.loads(detail)
    except ValueError:
        return detail or fallback
    if not isinstance(parsed, dict):
        return detail or fallback
    for key in ("message", "msg", "error_description", "detail", "error"):
        value = parsed.get(key)
        if value:
            return str(value)
    return detail or fallback


def postgrest_search_value(term: str) -> str:
    # Commas and parentheses delimit PostgREST logic trees.
    cleaned = "".join(ch for ch in term if ch not in ",()")
    return f"*{cleaned.strip()}*"


class SupabaseBackend:
    def __init__(
        self,
        url: str,
        anon_key: str,
        service_role_key: Optional[str] = None,
        *,
        timeout: float = 20,
    ) -> None:
        self.url = url.rstrip("/")
        self.anon_key = anon_key
        self.service_role_key = service_role_key or None
        self.timeout = timeout

    @property
    def _data_key(self) -> str:
        return self.service_role_key or self.anon_key

    def _request(
        self,
        method: str,
        path: str,
        *,
        token: Optional[str] = None,
        api_key: Optional[str] = None,
        body: Optional[Any] = None,
        query: Optional[List[Tuple[str, str]]] = None,
        prefer: Optional[str] = None,
    ) -> Any:
        url = f"{self.url}{path}"
        if query:
            url = f"{url}?{urlparse.urlencode(query, doseq=True)}"

        key = api_key or self.anon_key
        headers = {
            "apikey": key,
            "Authorization": f"Bearer {token or key}",
            "Accept": "application/json",
        }
        data = None
        if body is not None:
            data = json.dumps(body).encode("utf-8")
            headers["Content-Type"] = "application/json"
        if prefer:
            headers["Prefer"] = prefer

        req = urlrequest.Request(url, data=data, headers=headers, method=method.upper())
        try:
            with urlrequest.urlopen(req, timeout=self.timeout) as resp:
                raw = resp.read().decode("utf-8").strip()
                if not raw:
                    return None
                return json.loads(raw)
        except urlerror.HTTPError as exc:
            detail = ""
            try:
                detail = exc.read().decode("utf-8")
            except Exception:
                detail = str(exc)
            message = backend_error_message(detail, str(exc))
            raise BackendError(message, status_code=exc.code) from exc
        except ValueError as exc:
            raise BackendError(f"Invalid response from backend: {exc}") from exc
        except urlerror.URLError as exc:
            raise BackendError(f"Backend request failed: {exc.reason}") from exc

    # auth

    def sign_in_with_password(self, email: str, password: str) -> Dict[str, Any]:
        try:
            session = self._request(
                "POST",
                "/auth/v1/token",
                query=[("grant_type", "password")],
                body={"email": email, "password": password},
            )
        except BackendError as exc:
            if exc.status_code in (400, 401, 422):
                raise AuthError(exc.message, exc.status_code) from exc
            raise
        if not isinstance(session, dict) or not session.get("access_token"):
            raise AuthError("Invalid login credentials")
        return session

    def get_user(self, access_token: str) -> Optional[Dict[str, Any]]:
        if not access_token:
            return None
        try:
            user = self._request("GET", "/auth/v1/user", token=access_token)
        except BackendError as exc:
            if exc.status_code in (401, 403):
                return None
            raise
        return user if isinstance(user, dict) and user.get("id") else None

    def sign_out(self, access_token: str) -> None:
        try:
            self._request("POST", "/auth/v1/logout", token=access_token)
        except BackendError as exc:
            # An already revoked token is signed out as far as the caller cares.
            if exc.status_code not in (401, 403, 404):
                raise

    def create_auth_user(
        self,
        email: str,
        password: str,
        *,
        role: str,
        user_metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        if not self.service_role_key:
            raise BackendError("Creating auth users requires the service role key")
        user = self._request(
            "POST",
            "/auth/v1/admin/users",
            api_key=self.service_role_key,
            body={
                "email": email,
                "password": password,
                "email_confirm": True,
                "app_metadata": {"role": role},
                "user_metadata": {**(user_metadata or {}), "role": role},
            },
        )
        if not isinstance(user, dict):
            raise BackendError("Invalid response from backend")
        return user

    # tables

    def insert(self, table: str, record: Dict[str, Any]) -> Dict[str, Any]:
        rows = self._request(
            "POST",
            f"/rest/v1/{table}",
            api_key=self._data_key,
            body=record,
            prefer="return=representation",
        )
        if isinstance(rows, list) and rows:
            return rows[0]
        if isinstance(rows, dict):
            return rows
        raise BackendError(f"Insert into {table} returned no record")

    def select(
        self,
        table: str,
        *,
        filters: Optional[Dict[str, Any]] = None,
        search: Optional[SearchSpec] = None,
        order_by: Optional[str] = "created_at",
        descending: bool = True,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        query: List[Tuple[str, str]] = [("select", "*")]
        for column, value in (filters or {}).items():
            if isinstance(value, bool):
                value = "true" if value else "false"
            query.append((column, f"eq.{value}"))
        if search:
            columns, term = search
            pattern = postgrest_search_value(term)
            query.append(("or", "(" + ",".join(f"{column}.ilike.{pattern}" for column in columns) + ")"))
        if order_by:
            query.append(("order", f"{order_by}.{'desc' if descending else 'asc'}"))
        if limit:
            query.append(("limit", str(limit)))
        rows = self._request("GET", f"/rest/v1/{table}", api_key=self._data_key, query=query)
        return list(rows or [])

    def get(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        rows = self.select(table, filters={"id": record_id}, order_by=None, limit=1)
        return rows[0] if rows else None

    def update(self, table: str, record_id: str, updates: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        rows = self._request(
            "PATCH",
            f"/rest/v1/{table}",
            api_key=self._data_key,
            query=[("id", f"eq.{record_id}")],
            body=updates,
            prefer="return=representation",
        )
        return rows[0] if rows else None

    def delete(self, table: str, record_id: str) -> bool:
        rows = self._request(
            "DELETE",
            f"/rest/v1/{table}",
            api_key=self._data_key,
            query=[("id", f"eq.{record_id}")],
            prefer="return=representation",
        )
        return bool(rows)


# ----------------------
# Local backend
# ----------------------

TABLE_SCHEMAS: Dict[str, str] = {
    "client_submissions": """
        id TEXT PRIMARY KEY,
        first_name TEXT,
        last_name TEXT,
        email TEXT,
        phone TEXT,
        date_of_birth TEXT,
        address TEXT,
        city TEXT,
        state TEXT,
        zip_code TEXT,
        created_at TEXT
    """,
    "quote_requests": """
        id TEXT PRIMARY KEY,
        full_name TEXT,
        email TEXT,
        phone TEXT,
        insurance_type TEXT,
        coverage_amount TEXT,
        additional_info TEXT,
        status TEXT,
        created_at TEXT
    """,
    "clients": """
        id TEXT PRIMARY KEY,
        first_name TEXT,
        last_name TEXT,
        email TEXT,
        phone TEXT,
        address TEXT,
        city TEXT,
        state TEXT,
        zip_code TEXT,
        created_at TEXT
    """,
    "quote_statuses": """
        id TEXT PRIMARY KEY,
        name TEXT UNIQUE,
        display_name TEXT,
        sort_order INTEGER,
        is_active INTEGER,
        created_at TEXT
    """,
    "quotes": """
        id TEXT PRIMARY KEY,
        title TEXT,
        client_id TEXT,
        assigned_to TEXT,
        status_id TEXT,
        insurance_type TEXT,
        coverage_amount REAL,
        premium_amount REAL,
        notes TEXT,
        created_at TEXT,
        updated_at TEXT
    """,
    "users": """
        id TEXT PRIMARY KEY,
        full_name TEXT,
        email TEXT UNIQUE,
        phone TEXT,
        role TEXT,
        department TEXT,
        status TEXT,
        employee_id TEXT,
        job_title TEXT,
        vendor_company_name TEXT,
        vendor_type TEXT,
        timezone TEXT,
        preferred_language TEXT,
        is_active INTEGER,
        created_at TEXT,
        updated_at TEXT
    """,
    "departments": """
        id TEXT PRIMARY KEY,
        name TEXT UNIQUE,
        description TEXT,
        created_at TEXT
    """,
    "activities": """
        id TEXT PRIMARY KEY,
        user_id TEXT,
        quote_id TEXT,
        client_id TEXT,
        activity_type TEXT,
        description TEXT,
        created_at TEXT
    """,
}

DEFAULT_QUOTE_STATUSES = [
    ("new_request", "New Request"),
    ("contacted", "Contacted"),
    ("quoted", "Quoted"),
    ("closed_won", "Closed Won"),
    ("closed_lost", "Closed Lost"),
]

DEFAULT_DEPARTMENTS = [
    ("Sales", "New business and quoting"),
    ("Service", "Policy servicing and renewals"),
    ("Claims", "Claims intake and follow-up"),
    ("Operations", "Back office and administration"),
]


def like_pattern(term: str) -> str:
    escaped = term.strip().lower().replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def sha256_hex(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def hash_password(password: str, salt: str) -> str:
    return hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        salt.encode("utf-8"),
        PBKDF2_ITERATIONS,
    ).hex()


def create_password_credentials(password: str) -> tuple[str, str]:
    salt = secrets.token_hex(16)
    return salt, hash_password(password, salt)


def verify_password(password: str, salt: Optional[str], expected_hash: Optional[str]) -> bool:
    if not password or not salt or not expected_hash:
        return False
    actual_hash = hash_password(password, salt)
    return secrets.compare_digest(actual_hash, expected_hash)


class SqliteBackend:
    """Local stand-in for the hosted backend, one sqlite file per instance."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as exc:
            conn.rollback()
            raise BackendError(str(exc)) from exc
        finally:
            conn.close()

    def init_db(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            cur = conn.cursor()
            for table, columns in TABLE_SCHEMAS.items():
                cur.execute(f"CREATE TABLE IF NOT EXISTS {table}({columns})")
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS auth_users(
                    id TEXT PRIMARY KEY,
                    email TEXT UNIQUE,
                    password_salt TEXT,
                    password_hash TEXT,
                    role TEXT,
                    user_metadata TEXT,
                    created_at TEXT
                )
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS auth_sessions(
                    id TEXT PRIMARY KEY,
                    user_id TEXT,
                    session_hash TEXT,
                    expires_at TEXT,
                    created_at TEXT,
                    last_seen_at TEXT
                )
                """
            )
            cur.execute("SELECT COUNT(*) AS cnt FROM quote_statuses")
            if cur.fetchone()["cnt"] == 0:
                self._seed_quote_statuses(cur)
            cur.execute("SELECT COUNT(*) AS cnt FROM departments")
            if cur.fetchone()["cnt"] == 0:
                self._seed_departments(cur)

    def _seed_quote_statuses(self, cur: sqlite3.Cursor) -> None:
        now = now_iso()
        for index, (name, display_name) in enumerate(DEFAULT_QUOTE_STATUSES, start=1):
            cur.execute(
                """
                INSERT INTO quote_statuses (id, name, display_name, sort_order, is_active, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (str(uuid.uuid4()), name, display_name, index, 1, now),
            )

    def _seed_departments(self, cur: sqlite3.Cursor) -> None:
        now = now_iso()
        for name, description in DEFAULT_DEPARTMENTS:
            cur.execute(
                "INSERT INTO departments (id, name, description, created_at) VALUES (?, ?, ?, ?)",
                (str(uuid.uuid4()), name, description, now),
            )

    def ensure_admin_user(self, email: str, password: str, full_name: str) -> None:
        """Create the seed admin account and its users row once."""
        email = (email or "").strip().lower()
        if not email or not password:
            return
        with self._connect() as conn:
            cur = conn.cursor()
            cur.execute("SELECT id FROM auth_users WHERE email = ?", (email,))
            if cur.fetchone():
                return
        auth_user = self.create_auth_user(email, password, role="admin", user_metadata={"full_name": full_name})
        if not self.select("users", filters={"email": email}, order_by=None, limit=1):
            self.insert(
                "users",
                {
                    "id": auth_user["id"],
                    "full_name": full_name,
                    "email": email,
                    "role": "admin",
                    "status": "active",
                    "is_active": True,
                },
            )
        logger.info("Seeded default admin account %s", email)

    # auth

    @staticmethod
    def _user_payload(row: sqlite3.Row) -> Dict[str, Any]:
        metadata = json.loads(row["user_metadata"] or "{}")
        return {
            "id": row["id"],
            "email": row["email"],
            "role": "authenticated",
            "app_metadata": {"provider": "email", "role": row["role"]},
            "user_metadata": metadata,
            "created_at": row["created_at"],
        }

    def create_auth_user(
        self,
        email: str,
        password: str,
        *,
        role: str,
        user_metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        normalized_email = (email or "").strip().lower()
        salt, password_hash = create_password_credentials(password)
        metadata = {**(user_metadata or {}), "role": role}
        user_id = str(uuid.uuid4())
        with self._connect() as conn:
            cur = conn.cursor()
            try:
                cur.execute(
                    """
                    INSERT INTO auth_users (id, email, password_salt, password_hash, role, user_metadata, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (user_id, normalized_email, salt, password_hash, role, json.dumps(metadata), now_iso()),
                )
            except sqlite3.IntegrityError:
                raise BackendError("User already registered", status_code=422)
            cur.execute("SELECT * FROM auth_users WHERE id = ?", (user_id,))
            return self._user_payload(cur.fetchone())

    def sign_in_with_password(self, email: str, password: str) -> Dict[str, Any]:
        normalized_email = (email or "").strip().lower()
        with self._connect() as conn:
            cur = conn.cursor()
            cur.execute("SELECT * FROM auth_users WHERE email = ?", (normalized_email,))
            user = cur.fetchone()
            if not user or not verify_password(password, user["password_salt"], user["password_hash"]):
                raise AuthError("Invalid login credentials", status_code=400)

            token = secrets.token_urlsafe(32)
            now = datetime.utcnow()
            expires_at = now + timedelta(seconds=ACCESS_TOKEN_TTL_SECONDS)
            cur.execute(
                """
                INSERT INTO auth_sessions (id, user_id, session_hash, expires_at, created_at, last_seen_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    str(uuid.uuid4()),
                    user["id"],
                    sha256_hex(token),
                    expires_at.isoformat(),
                    now.isoformat(),
                    now.isoformat(),
                ),
            )
            return {
                "access_token": token,
                "token_type": "bearer",
                "expires_in": ACCESS_TOKEN_TTL_SECONDS,
                "expires_at": int(expires_at.timestamp()),
                "user": self._user_payload(user),
            }

    def get_user(self, access_token: str) -> Optional[Dict[str, Any]]:
        if not access_token:
            return None
        session_hash = sha256_hex(access_token)
        now = now_iso()
        with self._connect() as conn:
            cur = conn.cursor()
            cur.execute(
                """
                SELECT u.*
                FROM auth_sessions s
                JOIN auth_users u ON u.id = s.user_id
                WHERE s.session_hash = ? AND s.expires_at > ?
                ORDER BY s.created_at DESC
                LIMIT 1
                """,
                (session_hash, now),
            )
            row = cur.fetchone()
            if not row:
                return None
            cur.execute(
                "UPDATE auth_sessions SET last_seen_at = ? WHERE session_hash = ?",
                (now, session_hash),
            )
            return self._user_payload(row)

    def sign_out(self, access_token: str) -> None:
        if not access_token:
            return
        with self._connect() as conn:
            conn.execute("DELETE FROM auth_sessions WHERE session_hash = ?", (sha256_hex(access_token),))

    def expire_sessions(self, user_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE auth_sessions SET expires_at = ? WHERE user_id = ?",
                (now_iso(), user_id),
            )

    # tables

    def _columns(self, conn: sqlite3.Connection, table: str) -> List[str]:
        if table not in TABLE_SCHEMAS:
            raise BackendError(f"Unknown table: {table}", status_code=404)
        return [row["name"] for row in conn.execute(f"PRAGMA table_info({table})")]

    @staticmethod
    def _check_columns(table: str, keys: Sequence[str], columns: Sequence[str]) -> None:
        unknown = [key for key in keys if key not in columns]
        if unknown:
            raise BackendError(
                f"Could not find the '{unknown[0]}' column of '{table}'",
                status_code=400,
            )

    @staticmethod
    def _to_row_value(key: str, value: Any) -> Any:
        if key in BOOLEAN_COLUMNS and value is not None:
            return 1 if value else 0
        return value

    @staticmethod
    def _from_row(row: sqlite3.Row) -> Dict[str, Any]:
        data = dict(row)
        for key in BOOLEAN_COLUMNS:
            if key in data and data[key] is not None:
                data[key] = bool(data[key])
        return data

    def insert(self, table: str, record: Dict[str, Any]) -> Dict[str, Any]:
        data = dict(record)
        data.setdefault("id", str(uuid.uuid4()))
        with self._connect() as conn:
            columns = self._columns(conn, table)
            if "created_at" in columns:
                data.setdefault("created_at", now_iso())
            if "updated_at" in columns:
                data.setdefault("updated_at", data.get("created_at") or now_iso())
            self._check_columns(table, list(data), columns)
            keys = list(data)
            placeholders = ", ".join("?" for _ in keys)
            try:
                conn.execute(
                    f"INSERT INTO {table} ({', '.join(keys)}) VALUES ({placeholders})",
                    [self._to_row_value(key, data[key]) for key in keys],
                )
            except sqlite3.IntegrityError as exc:
                raise BackendError(f"Duplicate record in {table}: {exc}", status_code=409)
            row = conn.execute(f"SELECT * FROM {table} WHERE id = ?", (data["id"],)).fetchone()
            return self._from_row(row)

    def select(
        self,
        table: str,
        *,
        filters: Optional[Dict[str, Any]] = None,
        search: Optional[SearchSpec] = None,
        order_by: Optional[str] = "created_at",
        descending: bool = True,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        with self._connect() as conn:
            columns = self._columns(conn, table)
            clauses: List[str] = []
            params: List[Any] = []
            for column, value in (filters or {}).items():
                self._check_columns(table, [column], columns)
                clauses.append(f"{column} = ?")
                params.append(self._to_row_value(column, value))
            if search:
                search_columns, term = search
                self._check_columns(table, list(search_columns), columns)
                clauses.append("(" + " OR ".join(f"LOWER({column}) LIKE ? ESCAPE '\\'" for column in search_columns) + ")")
                params.extend([like_pattern(term)] * len(search_columns))
            sql = f"SELECT * FROM {table}"
            if clauses:
                sql += " WHERE " + " AND ".join(clauses)
            if order_by:
                self._check_columns(table, [order_by], columns)
                sql += f" ORDER BY {order_by} {'DESC' if descending else 'ASC'}"
            if limit:
                sql += " LIMIT ?"
                params.append(int(limit))
            return [self._from_row(row) for row in conn.execute(sql, params).fetchall()]

    def get(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        rows = self.select(table, filters={"id": record_id}, order_by=None, limit=1)
        return rows[0] if rows else None

    def update(self, table: str, record_id: str, updates: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        data = {key: value for key, value in updates.items() if key != "id"}
        with self._connect() as conn:
            columns = self._columns(conn, table)
            self._check_columns(table, list(data), columns)
            if data:
                assignments = ", ".join(f"{key} = ?" for key in data)
                try:
                    conn.execute(
                        f"UPDATE {table} SET {assignments} WHERE id = ?",
                        [self._to_row_value(key, value) for key, value in data.items()] + [record_id],
                    )
                except sqlite3.IntegrityError as exc:
                    raise BackendError(f"Duplicate record in {table}: {exc}", status_code=409)
            row = conn.execute(f"SELECT * FROM {table} WHERE id = ?", (record_id,)).fetchone()
            return self._from_row(row) if row else None

    def delete(self, table: str, record_id: str) -> bool:
        with self._connect() as conn:
            self._columns(conn, table)
            cur = conn.execute(f"DELETE FROM {table} WHERE id = ?", (record_id,))
            return cur.rowcount > 0
