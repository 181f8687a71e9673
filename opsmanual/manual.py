#!/usr/bin/env python3
"""
A single-file operator manual.

Categories hold items, items hold images.  Everybody can read, admins
edit.  The same store is reachable through small typed JSON procedures
under /api/ and through server-rendered pages.
"""

import json
import os
import re
import secrets
import sqlite3
import uuid
from collections import defaultdict, deque
from datetime import datetime, timezone
from functools import wraps
from html import escape
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from time import time
from typing import DefaultDict
from zoneinfo import ZoneInfo, available_timezones

import boto3
import click
from botocore.exceptions import BotoCoreError, ClientError
from flask import (
    Flask,
    Response,
    abort,
    flash,
    g,
    jsonify,
    redirect,
    render_template_string,
    request,
    session,
    url_for,
)
from itsdangerous import BadSignature, SignatureExpired, TimestampSigner
from markupsafe import Markup
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from werkzeug.middleware.proxy_fix import ProxyFix
from werkzeug.security import check_password_hash as verify_token
from werkzeug.security import generate_password_hash as hash_token
from werkzeug.utils import secure_filename

from opsmanual.render import block_json, blocks_to_html, render, render_html

################################################################################
# Imports & constants
################################################################################

ROOT = Path(__file__).parent
DB_FILE = Path(os.environ.get("OPSMANUAL_DB", str(ROOT / "manual.sqlite3")))

ENV_FILE = ROOT / ".env"
SECRET_FILE = ROOT / ".secret_key"
SECRET_KEY = os.environ.get("OPSMANUAL_SECRET_KEY") or (
    SECRET_FILE.read_text().strip() if SECRET_FILE.exists() else secrets.token_hex(32)
)
if not os.environ.get("OPSMANUAL_SECRET_KEY") and not SECRET_FILE.exists():
    SECRET_FILE.write_text(SECRET_KEY)
TOKEN_LEN = 48
TOKEN_MAX_AGE = 60
signer = TimestampSigner(SECRET_KEY, salt="login-token")

SITE_NAME_DEFAULT = "Operator Manual"
ROLES = ("user", "admin")
TZ_DFLT = "Asia/Seoul"

R2_ENV_KEYS = (
    "R2_ACCOUNT_ID",
    "R2_ACCESS_KEY_ID",
    "R2_SECRET_ACCESS_KEY",
    "R2_BUCKET",
    "R2_PUBLIC_BASE",
    "R2_ENDPOINT",
)
R2_REQUIRED_KEYS = (
    "R2_ACCOUNT_ID",
    "R2_ACCESS_KEY_ID",
    "R2_SECRET_ACCESS_KEY",
    "R2_BUCKET",
)
UPLOAD_MAX_BYTES = int(os.environ.get("UPLOAD_MAX_BYTES", str(16 * 1024 * 1024)))
PRESIGN_TTL = int(os.environ.get("PRESIGN_TTL", "3600"))
IMAGE_MIMES = {
    "image/png",
    "image/jpeg",
    "image/webp",
    "image/gif",
    "image/svg+xml",
}
SEARCH_LOG_LIMIT = 100

try:
    __version__ = version("opsmanual")
except PackageNotFoundError:
    __version__ = "0.1.0-dev"


################################################################################
# App + template filters
################################################################################
app = Flask(__name__)
app.url_map.strict_slashes = False
app.config.update(SECRET_KEY=SECRET_KEY, DATABASE=str(DB_FILE))
app.config.update(
    SESSION_COOKIE_SAMESITE="Lax",
    SESSION_COOKIE_HTTPONLY=True,
    SESSION_COOKIE_SECURE=os.environ.get("SESSION_COOKIE_SECURE", "1") != "0",
)
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)


@app.template_filter("content")
def content_filter(text: str | None) -> Markup:
    """Render an item body (plain-text dialect or HTML) for display."""
    return render_html(text)


@app.template_filter("ts")
def ts_filter(iso: str | None) -> str:
    if not iso:
        return ""
    try:
        dt = datetime.fromisoformat(iso)
    except ValueError:
        return iso
    return dt.astimezone(ZoneInfo(tz_name())).strftime("%Y.%m.%d %H:%M")


@app.template_filter("filesize")
def filesize_filter(n: int | None) -> str:
    if n is None:
        return ""
    size = float(n)
    for unit in ("B", "KB", "MB"):
        if size < 1024:
            return f"{size:.0f} {unit}" if unit == "B" else f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} GB"


###############################################################################
# Database helpers
###############################################################################
def get_db():
    if "db" not in g:
        g.db = sqlite3.connect(app.config["DATABASE"])
        g.db.execute("PRAGMA foreign_keys = ON;")
        g.db.row_factory = sqlite3.Row
    return g.db


@app.teardown_appcontext
def close_db(error=None):
    db = g.pop("db", None)
    if db is not None:
        db.close()


def init_db():
    db = get_db()
    db.executescript(
        f"""
        ------------------------------------------------------------
        -- 1.  Accounts
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS user (
            id              INTEGER PRIMARY KEY AUTOINCREMENT,
            username        TEXT UNIQUE NOT NULL,
            role            TEXT NOT NULL DEFAULT 'user',   -- user | admin
            token_hash      TEXT NOT NULL,
            created_at      TEXT NOT NULL,
            last_signed_in  TEXT
        );

        ------------------------------------------------------------
        -- 2.  Manual: categories -> items -> images
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS category (
            id          INTEGER PRIMARY KEY AUTOINCREMENT,
            title       TEXT NOT NULL,
            description TEXT,
            ord         INTEGER NOT NULL DEFAULT 0,
            created_at  TEXT NOT NULL,
            updated_at  TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS item (
            id          INTEGER PRIMARY KEY AUTOINCREMENT,
            category_id INTEGER NOT NULL,
            title       TEXT NOT NULL,
            content     TEXT NOT NULL,
            ord         INTEGER NOT NULL DEFAULT 0,
            created_at  TEXT NOT NULL,
            updated_at  TEXT NOT NULL,
            FOREIGN KEY (category_id) REFERENCES category(id) ON DELETE CASCADE
        );
        CREATE INDEX IF NOT EXISTS idx_item_category ON item(category_id, ord);

        CREATE TABLE IF NOT EXISTS item_image (
            id          INTEGER PRIMARY KEY AUTOINCREMENT,
            item_id     INTEGER NOT NULL,
            image_key   TEXT NOT NULL,
            image_url   TEXT NOT NULL,
            image_name  TEXT NOT NULL,
            mime_type   TEXT,
            size        INTEGER,
            ord         INTEGER NOT NULL DEFAULT 0,
            created_at  TEXT NOT NULL,
            updated_at  TEXT NOT NULL,
            FOREIGN KEY (item_id) REFERENCES item(id) ON DELETE CASCADE
        );
        CREATE INDEX IF NOT EXISTS idx_item_image_item ON item_image(item_id, ord);

        ------------------------------------------------------------
        -- 3.  Uploaded files (metadata only, bytes live in R2)
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS file (
            id          INTEGER PRIMARY KEY AUTOINCREMENT,
            key         TEXT UNIQUE NOT NULL,
            url         TEXT NOT NULL,
            name        TEXT NOT NULL,
            mime_type   TEXT,
            size        INTEGER,
            uploaded_by INTEGER NOT NULL,
            description TEXT,
            created_at  TEXT NOT NULL,
            updated_at  TEXT NOT NULL,
            FOREIGN KEY (uploaded_by) REFERENCES user(id)
        );

        ------------------------------------------------------------
        -- 4.  Search log
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS search_log (
            id           INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id      INTEGER NOT NULL,
            query        TEXT NOT NULL,
            result_count INTEGER NOT NULL DEFAULT 0,
            created_at   TEXT NOT NULL,
            FOREIGN KEY (user_id) REFERENCES user(id) ON DELETE CASCADE
        );

        ------------------------------------------------------------
        -- 5.  Site-wide key/value settings
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS settings (
            key   TEXT PRIMARY KEY,
            value TEXT
        );
        INSERT OR IGNORE INTO settings (key, value)
            VALUES ('site_name', '{SITE_NAME_DEFAULT}'),
                   ('timezone', '{TZ_DFLT}');
        """
    )
    db.commit()


# -------------------------------------------------------------------------
# Time helpers
# -------------------------------------------------------------------------
def utc_now() -> datetime:
    """Return an *aware* datetime in UTC."""
    return datetime.now(timezone.utc)


def now_iso() -> str:
    return utc_now().isoformat(timespec="seconds")


###############################################################################
# CLI – accounts + tokens
###############################################################################
def _issue_token(db, user_id: int) -> str:
    """Store the hash of a fresh handle for *user_id*, return the signed token."""
    handle = secrets.token_urlsafe(TOKEN_LEN)
    db.execute(
        "UPDATE user SET token_hash=? WHERE id=?", (hash_token(handle), user_id)
    )
    db.commit()
    return signer.sign(f"{user_id}:{handle}").decode()


def _create_user(db, *, username: str, role: str = "admin") -> str:
    cur = db.execute(
        "INSERT INTO user (username, role, token_hash, created_at) VALUES (?,?,?,?)",
        (username, role, hash_token(secrets.token_hex(16)), now_iso()),
    )
    return _issue_token(db, cur.lastrowid)


def _rotate_token(db, username: str | None = None) -> str:
    """Generate + store a *new* one-time token, return it for display."""
    if username:
        row = db.execute("SELECT id FROM user WHERE username=?", (username,)).fetchone()
    else:
        row = db.execute(
            "SELECT id FROM user WHERE role='admin' ORDER BY id LIMIT 1"
        ).fetchone()
    if row is None:
        raise LookupError(username or "admin")
    return _issue_token(db, row["id"])


def _echo_token(token: str) -> None:
    click.echo(f"\nOne-time login token:\n\n{token}\n")
    click.echo(f"Paste it into the login form at /login within {TOKEN_MAX_AGE} seconds.")


@app.cli.command("init")
@click.option("--username", prompt=True, help="Username of the first admin")
def cli_init(username: str):
    """Initialise the DB *and* create the first admin account."""
    init_db()  # no-op if already there
    db = get_db()
    try:
        token = _create_user(db, username=username.strip(), role="admin")
    except sqlite3.IntegrityError:
        raise click.ClickException(f"User {username!r} already exists.")
    click.secho("\n✅  Admin created.", fg="green")
    _echo_token(token)


@app.cli.command("add-user")
@click.option("--username", prompt=True)
@click.option("--role", type=click.Choice(ROLES), default="user", show_default=True)
def cli_add_user(username: str, role: str):
    """Create another account (readers that may upload files, or admins)."""
    init_db()
    try:
        token = _create_user(get_db(), username=username.strip(), role=role)
    except sqlite3.IntegrityError:
        raise click.ClickException(f"User {username!r} already exists.")
    click.secho(f"\n✅  {role.capitalize()} {username!r} created.", fg="green")
    _echo_token(token)


@app.cli.command("token")
@click.option("--username", default=None, help="Defaults to the first admin")
def cli_token(username: str | None):
    """Rotate a user's one-time login token."""
    try:
        token = _rotate_token(get_db(), username)
    except LookupError:
        raise click.ClickException(f"No such user: {username or 'admin'}")
    click.secho("\n🔑  Fresh login token generated.", fg="yellow")
    _echo_token(token)


###############################################################################
# Settings + environment
###############################################################################
def get_setting(key, default=None):
    row = get_db().execute("SELECT value FROM settings WHERE key=?", (key,)).fetchone()
    return row["value"] if row else default


def set_setting(key, value):
    db = get_db()
    db.execute(
        "INSERT INTO settings (key,value) VALUES (?,?) "
        "ON CONFLICT(key) DO UPDATE SET value=excluded.value",
        (key, value),
    )
    db.commit()


def site_name() -> str:
    return get_setting("site_name", SITE_NAME_DEFAULT)


def tz_name() -> str:
    tz = get_setting("timezone", TZ_DFLT)
    return tz if tz in available_timezones() else TZ_DFLT


def _read_env_file() -> dict[str, str]:
    env = {}
    if not ENV_FILE.exists():
        return env
    for ln in ENV_FILE.read_text().splitlines():
        ln = ln.strip()
        if not ln or ln.startswith("#") or "=" not in ln:
            continue
        k, v = ln.split("=", 1)
        env[k.strip()] = v.strip()
    return env


def _write_env_file(env: dict[str, str]) -> None:
    lines = [f"{k}={v}" for k, v in sorted(env.items()) if v]
    ENV_FILE.write_text("\n".join(lines) + "\n" if lines else "")
    try:
        ENV_FILE.chmod(0o600)
    except OSError:
        pass


def merge_env(updates: dict[str, str]) -> dict[str, str]:
    """Merge *updates* into both the process env and the .env file."""
    env = _read_env_file()
    changed = False
    for k, v in updates.items():
        if not v:
            continue
        if env.get(k) != v:
            env[k] = v
            changed = True
        os.environ[k] = v
    if changed:
        _write_env_file(env)
    return env


###############################################################################
# Errors
###############################################################################
class ApiError(Exception):
    """Failure that is reported to the caller as ``{"error": {...}}``."""

    status = 500
    code = "INTERNAL_SERVER_ERROR"

    def __init__(self, message: str, *, details=None):
        super().__init__(message)
        self.message = message
        self.details = details


class BadRequest(ApiError):
    status, code = 400, "BAD_REQUEST"


class Unauthorized(ApiError):
    status, code = 401, "UNAUTHORIZED"


class Forbidden(ApiError):
    status, code = 403, "FORBIDDEN"


class NotFound(ApiError):
    status, code = 404, "NOT_FOUND"


class MethodNotAllowed(ApiError):
    status, code = 405, "METHOD_NOT_SUPPORTED"


class PayloadTooLarge(ApiError):
    status, code = 413, "PAYLOAD_TOO_LARGE"


class UnsupportedMediaType(ApiError):
    status, code = 415, "UNSUPPORTED_MEDIA_TYPE"


class StorageError(ApiError):
    status, code = 502, "STORAGE_ERROR"


class StorageUnavailable(ApiError):
    status, code = 503, "STORAGE_UNAVAILABLE"


###############################################################################
# Object storage (R2 / any S3-compatible bucket)
###############################################################################
def r2_config() -> dict[str, str]:
    env_file = _read_env_file()
    cfg = {k: (os.environ.get(k) or env_file.get(k) or "").strip() for k in R2_ENV_KEYS}
    return {k: v for k, v in cfg.items() if v}


def r2_is_configured(cfg: dict[str, str] | None = None) -> bool:
    cfg = cfg or r2_config()
    return all(cfg.get(k) for k in R2_REQUIRED_KEYS)


def require_r2() -> dict[str, str]:
    cfg = r2_config()
    if not r2_is_configured(cfg):
        raise StorageUnavailable("File uploads are not configured.")
    return cfg


def _r2_client(cfg: dict[str, str]):
    endpoint = (
        cfg.get("R2_ENDPOINT")
        or f"https://{cfg['R2_ACCOUNT_ID']}.r2.cloudflarestorage.com"
    )
    return boto3.client(
        "s3",
        endpoint_url=endpoint,
        region_name="auto",
        aws_access_key_id=cfg["R2_ACCESS_KEY_ID"],
        aws_secret_access_key=cfg["R2_SECRET_ACCESS_KEY"],
    )


def r2_object_url(cfg: dict[str, str], key: str) -> str:
    base = cfg.get("R2_PUBLIC_BASE")
    if base:
        base = base.rstrip("/")
        return f"{base}/{key.lstrip('/')}"
    return f"https://{cfg['R2_BUCKET']}.{cfg['R2_ACCOUNT_ID']}.r2.cloudflarestorage.com/{key.lstrip('/')}"


def r2_put(cfg: dict[str, str], stream, key: str, mime: str) -> str:
    """Upload *stream* under *key*, return the public URL."""
    try:
        client = _r2_client(cfg)
        stream.seek(0)
        client.upload_fileobj(
            stream,
            cfg["R2_BUCKET"],
            key,
            ExtraArgs={"ContentType": mime},
        )
    except (BotoCoreError, ClientError):
        app.logger.exception("R2 upload failed")
        raise StorageError("Upload failed – check R2 credentials.")
    return r2_object_url(cfg, key)


def presigned_url(cfg: dict[str, str], key: str, *, ttl: int = PRESIGN_TTL) -> str:
    try:
        return _r2_client(cfg).generate_presigned_url(
            "get_object",
            Params={"Bucket": cfg["R2_BUCKET"], "Key": key},
            ExpiresIn=ttl,
        )
    except (BotoCoreError, ClientError):
        app.logger.exception("R2 presign failed for %s", key)
        raise StorageError("Could not create a download link.")


def r2_delete(keys) -> None:
    """Best-effort removal of stored objects; the DB rows are already gone."""
    keys = [k for k in keys if k]
    cfg = r2_config()
    if not keys or not r2_is_configured(cfg):
        return
    client = _r2_client(cfg)
    for key in keys:
        try:
            client.delete_object(Bucket=cfg["R2_BUCKET"], Key=key)
        except (BotoCoreError, ClientError):
            app.logger.exception("R2 delete failed for %s", key)


def read_upload(field: str = "file"):
    """Return ``(file, mime, size)`` for the uploaded *field* or raise."""
    if field not in request.files:
        raise BadRequest("No file received.")
    f = request.files[field]
    if not f.filename:
        raise BadRequest("No file selected.")

    clen = request.content_length
    if clen and clen > UPLOAD_MAX_BYTES:
        raise PayloadTooLarge(f"File too large ({UPLOAD_MAX_BYTES // 2**20} MiB max).")
    f.stream.seek(0, os.SEEK_END)
    size = f.stream.tell()
    f.stream.seek(0)
    if size > UPLOAD_MAX_BYTES:
        raise PayloadTooLarge(f"File too large ({UPLOAD_MAX_BYTES // 2**20} MiB max).")

    mime = (f.mimetype or "application/octet-stream").lower()
    return f, mime, size


###############################################################################
# Content store
###############################################################################
_COLUMNS = {
    "title": "title",
    "description": "description",
    "content": "content",
    "order": "ord",
}


def _update_row(table: str, row_id: int, changes: dict, *, db) -> None:
    """UPDATE only the columns present in *changes*."""
    cols = {_COLUMNS[k]: v for k, v in changes.items() if k in _COLUMNS}
    if not cols:
        return
    cols["updated_at"] = now_iso()
    assignments = ", ".join(f"{c}=?" for c in cols)
    db.execute(
        f"UPDATE {table} SET {assignments} WHERE id=?", (*cols.values(), row_id)
    )
    db.commit()


def _next_ord(table: str, parent_col: str, parent_id: int, *, db) -> int:
    return db.execute(
        f"SELECT COALESCE(MAX(ord), -1) + 1 FROM {table} WHERE {parent_col}=?",
        (parent_id,),
    ).fetchone()[0]


# ── categories ─────────────────────────────────────────────────────────
def list_categories(*, db):
    return db.execute("SELECT * FROM category ORDER BY ord, id").fetchall()


def get_category(category_id: int, *, db):
    row = db.execute("SELECT * FROM category WHERE id=?", (category_id,)).fetchone()
    if row is None:
        raise NotFound(f"Category {category_id} not found.")
    return row


def create_category(*, title: str, description: str | None = None, order=None, db):
    now = now_iso()
    cur = db.execute(
        """INSERT INTO category (title, description, ord, created_at, updated_at)
                VALUES (?,?,?,?,?)""",
        (title, description, order or 0, now, now),
    )
    db.commit()
    return get_category(cur.lastrowid, db=db)


def update_category(category_id: int, changes: dict, *, db):
    get_category(category_id, db=db)
    _update_row("category", category_id, changes, db=db)
    return get_category(category_id, db=db)


def delete_category(category_id: int, *, db) -> list[str]:
    """Delete the category with its items and images; return orphaned image keys."""
    get_category(category_id, db=db)
    keys = [
        r["image_key"]
        for r in db.execute(
            """SELECT ii.image_key FROM item_image ii
                 JOIN item i ON i.id = ii.item_id
                WHERE i.category_id=?""",
            (category_id,),
        )
    ]
    db.execute("DELETE FROM category WHERE id=?", (category_id,))
    db.commit()
    return keys


# ── items ──────────────────────────────────────────────────────────────
def list_items(category_id: int, *, db):
    return db.execute(
        "SELECT * FROM item WHERE category_id=? ORDER BY ord, id", (category_id,)
    ).fetchall()


def get_item(item_id: int, *, db):
    row = db.execute(
        """SELECT i.*, c.title AS category_title
             FROM item i JOIN category c ON c.id = i.category_id
            WHERE i.id=?""",
        (item_id,),
    ).fetchone()
    if row is None:
        raise NotFound(f"Item {item_id} not found.")
    return row


def create_item(category_id: int, *, title: str, content: str, order=None, db):
    get_category(category_id, db=db)
    now = now_iso()
    cur = db.execute(
        """INSERT INTO item (category_id, title, content, ord, created_at, updated_at)
                VALUES (?,?,?,?,?,?)""",
        (category_id, title, content, order or 0, now, now),
    )
    db.commit()
    return get_item(cur.lastrowid, db=db)


def update_item(item_id: int, changes: dict, *, db):
    get_item(item_id, db=db)
    _update_row("item", item_id, changes, db=db)
    return get_item(item_id, db=db)


def delete_item(item_id: int, *, db) -> list[str]:
    get_item(item_id, db=db)
    keys = [
        r["image_key"]
        for r in db.execute(
            "SELECT image_key FROM item_image WHERE item_id=?", (item_id,)
        )
    ]
    db.execute("DELETE FROM item WHERE id=?", (item_id,))
    db.commit()
    return keys


def _like_pattern(q: str) -> str:
    q = q.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{q}%"


def search_items(query: str, *, db):
    """Case-insensitive substring match on item titles."""
    return db.execute(
        """SELECT i.*, c.title AS category_title
             FROM item i JOIN category c ON c.id = i.category_id
            WHERE i.title LIKE ? ESCAPE '\\'
         ORDER BY c.ord, c.id, i.ord, i.id""",
        (_like_pattern(query.strip()),),
    ).fetchall()


def log_search(user_id: int, query: str, result_count: int, *, db) -> None:
    try:
        db.execute(
            """INSERT INTO search_log (user_id, query, result_count, created_at)
                    VALUES (?,?,?,?)""",
            (user_id, query, result_count, now_iso()),
        )
        db.commit()
    except sqlite3.Error:
        # a lost log line must not break the search itself
        app.logger.warning("Could not log search %r", query, exc_info=True)


def recent_searches(*, db, limit: int = SEARCH_LOG_LIMIT):
    return db.execute(
        """SELECT s.*, u.username
             FROM search_log s LEFT JOIN user u ON u.id = s.user_id
         ORDER BY s.id DESC LIMIT ?""",
        (limit,),
    ).fetchall()


def manual_tree(*, db) -> list[dict]:
    """Categories in order, each with its ordered ``items``."""
    tree = [dict(c, items=[]) for c in list_categories(db=db)]
    by_id = {c["id"]: c for c in tree}
    for it in db.execute("SELECT * FROM item ORDER BY ord, id"):
        if it["category_id"] in by_id:
            by_id[it["category_id"]]["items"].append(dict(it))
    return tree


def filter_manual(tree: list[dict], query: str | None) -> list[dict]:
    """
    Keep the categories whose title matches *query* or that contain an
    item whose title or content matches.  Matching categories keep all
    their items.
    """
    q = (query or "").strip().lower()
    if not q:
        return tree
    return [
        cat
        for cat in tree
        if q in cat["title"].lower()
        or any(
            q in it["title"].lower() or q in it["content"].lower()
            for it in cat["items"]
        )
    ]


# ── item images ────────────────────────────────────────────────────────
def list_item_images(item_id: int, *, db):
    return db.execute(
        "SELECT * FROM item_image WHERE item_id=? ORDER BY ord, id", (item_id,)
    ).fetchall()


def get_item_image(image_id: int, *, db):
    row = db.execute("SELECT * FROM item_image WHERE id=?", (image_id,)).fetchone()
    if row is None:
        raise NotFound(f"Image {image_id} not found.")
    return row


def create_item_image(
    item_id: int,
    *,
    image_key: str,
    image_url: str,
    image_name: str,
    mime_type: str | None = None,
    size: int | None = None,
    order: int | None = None,
    db,
):
    get_item(item_id, db=db)
    if order is None:
        order = _next_ord("item_image", "item_id", item_id, db=db)
    now = now_iso()
    cur = db.execute(
        """INSERT INTO item_image
                (item_id, image_key, image_url, image_name, mime_type, size, ord,
                 created_at, updated_at)
                VALUES (?,?,?,?,?,?,?,?,?)""",
        (item_id, image_key, image_url, image_name, mime_type, size, order, now, now),
    )
    db.commit()
    return get_item_image(cur.lastrowid, db=db)


def delete_item_image(image_id: int, *, db) -> str:
    row = get_item_image(image_id, db=db)
    db.execute("DELETE FROM item_image WHERE id=?", (image_id,))
    db.commit()
    return row["image_key"]


def reorder_item_image(image_id: int, order: int, *, db):
    get_item_image(image_id, db=db)
    _update_row("item_image", image_id, {"order": order}, db=db)
    return get_item_image(image_id, db=db)


# ── files ──────────────────────────────────────────────────────────────
def list_files(*, db):
    return db.execute(
        """SELECT f.*, u.username AS uploader
             FROM file f LEFT JOIN user u ON u.id = f.uploaded_by
         ORDER BY f.created_at, f.id"""
    ).fetchall()


def get_file(file_id: int, *, db):
    row = db.execute("SELECT * FROM file WHERE id=?", (file_id,)).fetchone()
    if row is None:
        raise NotFound(f"File {file_id} not found.")
    return row


def create_file(
    *,
    key: str,
    url: str,
    name: str,
    uploaded_by: int,
    mime_type: str | None = None,
    size: int | None = None,
    description: str | None = None,
    db,
):
    now = now_iso()
    cur = db.execute(
        """INSERT INTO file
                (key, url, name, mime_type, size, uploaded_by, description,
                 created_at, updated_at)
                VALUES (?,?,?,?,?,?,?,?,?)""",
        (key, url, name, mime_type, size, uploaded_by, description, now, now),
    )
    db.commit()
    return get_file(cur.lastrowid, db=db)


def delete_file(file_id: int, *, db) -> str:
    row = get_file(file_id, db=db)
    db.execute("DELETE FROM file WHERE id=?", (file_id,))
    db.commit()
    return row["key"]


def file_key(user_id: int, name: str) -> str:
    safe = secure_filename(name) or uuid.uuid4().hex
    millis = int(utc_now().timestamp() * 1000)
    return f"uploads/{user_id}/{millis}-{safe}"


###############################################################################
# Authentication
###############################################################################
def validate_token(token: str, max_age: int = TOKEN_MAX_AGE):
    """
    Check signature + age of *token* in one step, then compare the handle
    against the hashed copy of its user.  Returns the user row or None.
    """
    try:
        payload = signer.unsign(token, max_age=max_age).decode()
    except SignatureExpired:
        return None  # too old ➜ invalid
    except BadSignature:
        return None  # forged ➜ invalid

    uid, _, handle = payload.partition(":")
    if not uid.isdigit() or not handle:
        return None
    row = get_db().execute("SELECT * FROM user WHERE id=?", (int(uid),)).fetchone()
    if row and verify_token(row["token_hash"], handle):
        return row
    return None


def current_user():
    """The signed-in user row, or None."""
    uid = session.get("user_id")
    if not uid:
        return None
    return get_db().execute("SELECT * FROM user WHERE id=?", (uid,)).fetchone()


def is_admin() -> bool:
    user = current_user()
    return bool(user and user["role"] == "admin")


def login_required():
    user = current_user()
    if user is None:
        raise Unauthorized("Please sign in first.")
    return user


def admin_required():
    user = login_required()
    if user["role"] != "admin":
        raise Forbidden("Admins only.")
    return user


def rate_limit(max_requests: int, window: int = 60):
    hits: DefaultDict[str, deque] = defaultdict(deque)

    def decorator(view):
        @wraps(view)
        def wrapped(*args, **kwargs):
            now = time()
            # left-most entry after ProxyFix = real client
            ip = (
                request.access_route[0] if request.access_route else request.remote_addr
            ) or "unknown"

            dq = hits[ip]
            while dq and now - dq[0] > window:
                dq.popleft()

            if len(dq) >= max_requests:
                retry_after = int(window - (now - dq[0]))
                return Response(
                    "Too many requests – try again later.",
                    status=429,
                    headers={"Retry-After": str(retry_after)},
                )

            dq.append(now)
            return view(*args, **kwargs)

        return wrapped

    return decorator


def _csrf_token() -> str:
    """One token per session (rotates when the cookie does)."""
    return session.get("csrf", "")


SAFE_METHODS = {"GET", "HEAD", "OPTIONS", "TRACE"}


@app.before_request
def csrf_protect():
    # read-only verbs ⇒ always allowed
    if request.method in SAFE_METHODS:
        return

    # anonymous ⇒ nothing to forge (covers /login POST)
    if not session.get("user_id"):
        return

    token = session.get("csrf", "")
    sent = request.form.get("csrf") or request.headers.get("X-CSRFToken", "")
    if not token or not secrets.compare_digest(token, sent):
        raise Forbidden("CSRF token missing or invalid.")


@app.after_request
def sec_headers(resp):
    resp.headers.update(
        {
            "X-Frame-Options": "DENY",
            "X-Content-Type-Options": "nosniff",
            "Referrer-Policy": "strict-origin-when-cross-origin",
        }
    )
    return resp


app.jinja_env.globals.update(
    csrf_token=_csrf_token,
    current_user=current_user,
    is_admin=is_admin,
    site_name=site_name,
    version=__version__,
    r2_enabled=r2_is_configured,
)


###############################################################################
# Remote procedures
###############################################################################
class _Input(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class ById(_Input):
    id: int


class CategoryItemsInput(_Input):
    category_id: int = Field(alias="categoryId")


class SearchInput(_Input):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    query: str = Field(min_length=1, max_length=255)


class CategoryCreate(_Input):
    title: str = Field(min_length=1, max_length=255)
    description: str | None = None
    order: int | None = None


class CategoryUpdate(_Input):
    id: int
    title: str | None = Field(None, min_length=1, max_length=255)
    description: str | None = None
    order: int | None = None


class ItemCreate(_Input):
    category_id: int = Field(alias="categoryId")
    title: str = Field(min_length=1, max_length=255)
    content: str = Field(min_length=1)
    order: int | None = None


class ItemUpdate(_Input):
    id: int
    title: str | None = Field(None, min_length=1, max_length=255)
    content: str | None = Field(None, min_length=1)
    order: int | None = None


class ItemImagesInput(_Input):
    item_id: int = Field(alias="itemId")


class ItemImageCreate(_Input):
    item_id: int = Field(alias="itemId")
    image_key: str = Field(alias="imageKey", min_length=1)
    image_url: str = Field(alias="imageUrl", min_length=1)
    image_name: str = Field(alias="imageName", min_length=1)
    mime_type: str | None = Field(None, alias="mimeType")
    size: int | None = None
    order: int | None = None


class ItemImageUpload(_Input):
    item_id: int = Field(alias="itemId")
    order: int | None = None


class ImageOrderInput(_Input):
    id: int
    order: int


class FileCreate(_Input):
    name: str = Field(min_length=1, max_length=255)
    mime_type: str | None = Field(None, alias="mimeType")
    size: int | None = None
    description: str | None = None


class FileUpload(_Input):
    description: str | None = None


class FileKeyInput(_Input):
    file_key: str = Field(alias="fileKey", min_length=1)


class FileIdInput(_Input):
    file_id: int = Field(alias="fileId")


def _json_key(col: str) -> str:
    if col == "ord":
        return "order"
    head, *rest = col.split("_")
    return head + "".join(p.capitalize() for p in rest)


def row_json(row) -> dict:
    """sqlite Row → camelCase dict (``ord`` is exposed as ``order``)."""
    return {_json_key(k): row[k] for k in row.keys() if k != "token_hash"}


def _changes(data: BaseModel) -> dict:
    """Fields the caller actually sent, minus the id and null NOT NULL columns."""
    sent = data.model_dump(exclude_unset=True, exclude={"id"})
    return {k: v for k, v in sent.items() if v is not None or k == "description"}


PROCEDURES: dict[str, dict] = {}


def procedure(name: str, *, kind: str = "query", access: str = "public", schema=None):
    """
    Register *fn* as ``/api/<name>``.

    kind:   query (GET, query string) | mutation (POST, JSON) |
            upload (POST, multipart form)
    access: public | user | admin
    """

    def decorator(fn):
        PROCEDURES[name] = {"fn": fn, "kind": kind, "access": access, "schema": schema}
        return fn

    return decorator


def _check_access(access: str) -> None:
    if access == "admin":
        admin_required()
    elif access == "user":
        login_required()


@app.route("/api/<name>", methods=["GET", "POST"])
def rpc(name: str):
    proc = PROCEDURES.get(name)
    if proc is None:
        raise NotFound(f"No procedure named {name!r}.")

    method = "GET" if proc["kind"] == "query" else "POST"
    if request.method != method:
        raise MethodNotAllowed(f"{name} must be called with {method}.")
    _check_access(proc["access"])

    if proc["kind"] == "query":
        payload = request.args.to_dict()
    elif proc["kind"] == "upload":
        payload = {k: v for k, v in request.form.items() if k != "csrf"}
    else:
        payload = request.get_json(silent=True)
        if payload is None:
            payload = {}
        if not isinstance(payload, dict):
            raise BadRequest("Expected a JSON object.")

    schema = proc["schema"]
    result = proc["fn"](schema.model_validate(payload)) if schema else proc["fn"]()
    return jsonify(result)


# ── manual router: reads ───────────────────────────────────────────────
def rendered_json(content: str) -> dict:
    out = render(content)
    if isinstance(out, str):
        return {"format": "markup", "html": out}
    return {
        "format": "blocks",
        "blocks": [block_json(b) for b in out],
        "html": blocks_to_html(out),
    }


@procedure("manual.getCategories")
def rpc_get_categories():
    return [row_json(r) for r in list_categories(db=get_db())]


@procedure("manual.getItemsByCategory", schema=CategoryItemsInput)
def rpc_get_items(data: CategoryItemsInput):
    return [row_json(r) for r in list_items(data.category_id, db=get_db())]


@procedure("manual.getItem", schema=ById)
def rpc_get_item(data: ById):
    db = get_db()
    row = get_item(data.id, db=db)
    return {
        **row_json(row),
        **rendered_json(row["content"]),
        "images": [row_json(r) for r in list_item_images(row["id"], db=db)],
    }


@procedure("manual.search", schema=SearchInput)
def rpc_search(data: SearchInput):
    db = get_db()
    rows = search_items(data.query, db=db)
    user = current_user()
    if user is not None:
        log_search(user["id"], data.query, len(rows), db=db)
    return [row_json(r) for r in rows]


@procedure("manual.getItemImages", schema=ItemImagesInput)
def rpc_get_item_images(data: ItemImagesInput):
    return [row_json(r) for r in list_item_images(data.item_id, db=get_db())]


@procedure("manual.searchLogs", access="admin")
def rpc_search_logs():
    return [row_json(r) for r in recent_searches(db=get_db())]


# ── manual router: admin mutations ─────────────────────────────────────
@procedure("manual.createCategory", kind="mutation", access="admin", schema=CategoryCreate)
def rpc_create_category(data: CategoryCreate):
    row = create_category(
        title=data.title, description=data.description, order=data.order, db=get_db()
    )
    app.logger.info("category %s created", row["id"])
    return row_json(row)


@procedure("manual.updateCategory", kind="mutation", access="admin", schema=CategoryUpdate)
def rpc_update_category(data: CategoryUpdate):
    return row_json(update_category(data.id, _changes(data), db=get_db()))


@procedure("manual.deleteCategory", kind="mutation", access="admin", schema=ById)
def rpc_delete_category(data: ById):
    r2_delete(delete_category(data.id, db=get_db()))
    app.logger.info("category %s deleted", data.id)
    return {"id": data.id, "deleted": True}


@procedure("manual.createItem", kind="mutation", access="admin", schema=ItemCreate)
def rpc_create_item(data: ItemCreate):
    row = create_item(
        data.category_id,
        title=data.title,
        content=data.content,
        order=data.order,
        db=get_db(),
    )
    app.logger.info("item %s created in category %s", row["id"], data.category_id)
    return row_json(row)


@procedure("manual.updateItem", kind="mutation", access="admin", schema=ItemUpdate)
def rpc_update_item(data: ItemUpdate):
    return row_json(update_item(data.id, _changes(data), db=get_db()))


@procedure("manual.deleteItem", kind="mutation", access="admin", schema=ById)
def rpc_delete_item(data: ById):
    r2_delete(delete_item(data.id, db=get_db()))
    app.logger.info("item %s deleted", data.id)
    return {"id": data.id, "deleted": True}


@procedure("manual.createItemImage", kind="mutation", access="admin", schema=ItemImageCreate)
def rpc_create_item_image(data: ItemImageCreate):
    row = create_item_image(
        data.item_id,
        image_key=data.image_key,
        image_url=data.image_url,
        image_name=data.image_name,
        mime_type=data.mime_type,
        size=data.size,
        order=data.order,
        db=get_db(),
    )
    return row_json(row)


def store_item_image(item_id: int, *, order: int | None = None):
    """Push the uploaded ``file`` to R2 and attach it to *item_id*."""
    db = get_db()
    get_item(item_id, db=db)
    cfg = require_r2()
    f, mime, size = read_upload()
    if mime not in IMAGE_MIMES:
        raise UnsupportedMediaType("Only image uploads are allowed.")

    ext = Path(secure_filename(f.filename)).suffix.lower()
    key = f"items/{item_id}/{uuid.uuid4().hex}{ext}"
    url = r2_put(cfg, f.stream, key, mime)
    return create_item_image(
        item_id,
        image_key=key,
        image_url=url,
        image_name=f.filename,
        mime_type=mime,
        size=size,
        order=order,
        db=db,
    )


@procedure("manual.uploadItemImage", kind="upload", access="admin", schema=ItemImageUpload)
def rpc_upload_item_image(data: ItemImageUpload):
    return row_json(store_item_image(data.item_id, order=data.order))


@procedure("manual.deleteItemImage", kind="mutation", access="admin", schema=ById)
def rpc_delete_item_image(data: ById):
    r2_delete([delete_item_image(data.id, db=get_db())])
    return {"id": data.id, "deleted": True}


@procedure(
    "manual.updateItemImageOrder", kind="mutation", access="admin", schema=ImageOrderInput
)
def rpc_update_item_image_order(data: ImageOrderInput):
    return row_json(reorder_item_image(data.id, data.order, db=get_db()))


# ── files router (any signed-in user) ──────────────────────────────────
def _file_manager_check(row, user) -> None:
    if row["uploaded_by"] != user["id"] and user["role"] != "admin":
        raise Forbidden("Only the uploader or an admin may delete this file.")


@procedure("files.list", access="user")
def rpc_files_list():
    return [row_json(r) for r in list_files(db=get_db())]


@procedure("files.upload", kind="mutation", access="user", schema=FileCreate)
def rpc_files_upload(data: FileCreate):
    """Record metadata for a file whose bytes are pushed to the bucket separately."""
    user = current_user()
    cfg = require_r2()
    key = file_key(user["id"], data.name)
    row = create_file(
        key=key,
        url=r2_object_url(cfg, key),
        name=data.name,
        mime_type=data.mime_type,
        size=data.size,
        uploaded_by=user["id"],
        description=data.description,
        db=get_db(),
    )
    return row_json(row)


def store_file(user, *, description: str | None = None):
    cfg = require_r2()
    f, mime, size = read_upload()
    key = file_key(user["id"], f.filename)
    url = r2_put(cfg, f.stream, key, mime)
    return create_file(
        key=key,
        url=url,
        name=f.filename,
        mime_type=mime,
        size=size,
        uploaded_by=user["id"],
        description=description,
        db=get_db(),
    )


@procedure("files.uploadBinary", kind="upload", access="user", schema=FileUpload)
def rpc_files_upload_binary(data: FileUpload):
    return row_json(store_file(current_user(), description=data.description))


@procedure("files.getDownloadUrl", access="user", schema=FileKeyInput)
def rpc_files_download_url(data: FileKeyInput):
    row = get_db().execute(
        "SELECT key FROM file WHERE key=?", (data.file_key,)
    ).fetchone()
    if row is None:
        raise NotFound(f"No file stored under {data.file_key!r}.")
    return {"url": presigned_url(require_r2(), row["key"])}


@procedure("files.delete", kind="mutation", access="user", schema=FileIdInput)
def rpc_files_delete(data: FileIdInput):
    db = get_db()
    _file_manager_check(get_file(data.file_id, db=db), current_user())
    r2_delete([delete_file(data.file_id, db=db)])
    return {"id": data.file_id, "deleted": True}


###############################################################################
# Templates + Views
###############################################################################
def wrap(body: str) -> str:
    """Glue prolog + page-specific body + epilog."""
    return TEMPL_PROLOG + body + TEMPL_EPILOG


TEMPL_PROLOG = """
<!doctype html>
<html lang="ko">
<title>{{ title or site_name() }}</title>
<meta name="viewport" content="width=device-width, initial-scale=1">
<meta charset="utf-8">
<style>
html{font-size:62.5%;font-family:-apple-system,BlinkMacSystemFont,"Segoe UI",Roboto,"Noto Sans KR",sans-serif}
body{font-size:1.7rem;line-height:1.618;margin:0;color:#2d2f45;background:#f6f7fb}
a{color:#4f46e5;text-decoration:none}a:hover{text-decoration:underline}
h1,h2,h3{line-height:1.2;margin:2rem 0 1rem}
.top{display:flex;align-items:center;justify-content:space-between;gap:1rem;padding:1rem 2rem;background:#fff;box-shadow:0 1px 4px rgba(0,0,0,.06)}
.top .brand{font-weight:700;font-size:1.1em;color:#2d2f45}
.top nav{display:flex;gap:1.2rem;align-items:center;font-size:.9em}
.top input{padding:.3rem .6rem;border:1px solid #d7d9e6;border-radius:6px}
.layout{display:grid;grid-template-columns:28rem 1fr;gap:2rem;max-width:120rem;margin:2rem auto;padding:0 2rem}
.sidebar{background:#fff;border-radius:16px;padding:1.5rem;box-shadow:0 4px 14px rgba(0,0,0,.05);align-self:start}
.sidebar summary{cursor:pointer;font-weight:600;padding:.4rem 0}
.sidebar ul{list-style:none;margin:0 0 .8rem;padding-left:1rem}
.sidebar a[aria-current=page]{font-weight:700;color:#2d2f45}
.card{background:#fff;border-radius:16px;padding:2.5rem 3rem;box-shadow:0 4px 14px rgba(0,0,0,.05)}
.crumbs{font-size:.85em;color:#8a8ca3;margin-bottom:1rem}
.content li{margin-bottom:.3em}
.content img{max-width:100%;height:auto}
.content table{border-collapse:collapse}.content td,.content th{border:1px solid #e3e5ef;padding:.4em .7em}
.gallery{display:grid;grid-template-columns:repeat(auto-fill,minmax(14rem,1fr));gap:1rem;margin-top:2rem}
.gallery img{width:100%;border-radius:8px;border:1px solid #e3e5ef}
.narrow{max-width:80rem;margin:2rem auto;padding:0 2rem}
input,textarea,select{font:inherit;padding:.4rem .7rem;border:1px solid #d7d9e6;border-radius:6px;box-sizing:border-box}
textarea{width:100%;min-height:14rem}
button{font:inherit;padding:.4rem 1rem;border:0;border-radius:6px;background:#4f46e5;color:#fff;cursor:pointer}
button.danger{background:#c0392b}
table.list{width:100%;border-collapse:collapse;margin-bottom:2rem}
table.list td,table.list th{text-align:left;padding:.5rem;border-bottom:1px solid #e3e5ef}
.toast{position:fixed;top:1rem;right:1rem;background:#323232;color:#fff;padding:.75rem 1rem;border-radius:.4rem;font-size:.9em;max-width:28rem;z-index:999}
mark{background:#d1fae5;color:inherit}
@media (max-width:760px){.layout{grid-template-columns:1fr}}
</style>
<body>
<header class="top">
    <a class="brand" href="{{ url_for('index') }}">{{ site_name() }}</a>
    <nav aria-label="Primary">
        <form action="{{ url_for('search') }}" method="get" style="margin:0">
            <input type="search" name="q" aria-label="Search items" placeholder="검색..."
                   value="{{ request.args.get('q','') }}">
        </form>
        {% set me = current_user() %}
        {% if me %}
            <a href="{{ url_for('files') }}">Files</a>
            {% if me['role'] == 'admin' %}
                <a href="{{ url_for('admin') }}">Admin</a>
                <a href="{{ url_for('settings') }}">Settings</a>
            {% endif %}
            <a href="{{ url_for('logout') }}">Logout ({{ me['username'] }})</a>
        {% else %}
            <a href="{{ url_for('login') }}">Login</a>
        {% endif %}
    </nav>
</header>
{% with msgs = get_flashed_messages() %}
{% if msgs %}
<div class="toast" role="status" aria-live="polite">{{ msgs|join('<br>'|safe) }}</div>
{% endif %}
{% endwith %}
<main id="main-content">
"""

TEMPL_EPILOG = """
</main>
<footer style="text-align:center;font-size:.75em;color:#8a8ca3;margin:3rem 0;">
    {{ site_name() }} · opsmanual v{{ version }}
</footer>
</body>
</html>
"""


# ── public pages ───────────────────────────────────────────────────────
@app.route("/")
def index():
    db = get_db()
    tree = filter_manual(manual_tree(db=db), request.args.get("filter"))
    first = next((it for cat in tree for it in cat["items"]), None)
    item = get_item(first["id"], db=db) if first else None
    return render_template_string(
        TEMPL_MANUAL,
        tree=tree,
        item=item,
        images=list_item_images(item["id"], db=db) if item else [],
        query=request.args.get("filter", ""),
    )


@app.route("/items/<int:item_id>")
def item_detail(item_id: int):
    db = get_db()
    item = get_item(item_id, db=db)
    return render_template_string(
        TEMPL_MANUAL,
        tree=filter_manual(manual_tree(db=db), request.args.get("filter")),
        item=item,
        images=list_item_images(item_id, db=db),
        query=request.args.get("filter", ""),
        title=f"{item['title']} · {site_name()}",
    )


TEMPL_MANUAL = wrap("""
<div class="layout">
    <aside class="sidebar">
        <form method="get" action="{{ url_for('index') }}">
            <input type="search" name="filter" placeholder="필터..." value="{{ query }}"
                   aria-label="Filter the manual" style="width:100%">
        </form>
        {% for cat in tree %}
        <details {% if query or (item and item['category_id']==cat['id']) or loop.first %}open{% endif %}>
            <summary>{{ cat['title'] }}</summary>
            <ul>
            {% for it in cat['items'] %}
                <li><a href="{{ url_for('item_detail', item_id=it['id'], filter=query or None) }}"
                       {% if item and item['id']==it['id'] %}aria-current="page"{% endif %}>
                    {{ it['title'] }}</a></li>
            {% endfor %}
            </ul>
        </details>
        {% else %}
            <p style="color:#8a8ca3;">Nothing matches.</p>
        {% endfor %}
    </aside>
    <section>
    {% if item %}
        <div class="crumbs">{{ item['category_title'] }} / <strong>{{ item['title'] }}</strong></div>
        <article class="card">
            <h1 style="margin-top:0">{{ item['title'] }}</h1>
            <div class="content">{{ item['content']|content }}</div>
            {% if images %}
            <div class="gallery">
                {% for img in images %}
                <a href="{{ img['image_url'] }}" target="_blank" rel="noopener">
                    <img src="{{ img['image_url'] }}" alt="{{ img['image_name'] }}" loading="lazy">
                </a>
                {% endfor %}
            </div>
            {% endif %}
            <small style="color:#8a8ca3;">Updated {{ item['updated_at']|ts }}</small>
        </article>
    {% else %}
        <div class="card"><p style="color:#8a8ca3;">콘텐츠를 선택해주세요</p></div>
    {% endif %}
    </section>
</div>
""")


def _highlight(text: str | None, term: str) -> Markup:
    """Escape *text*, then wrap every occurrence of *term* in <mark>."""
    if not text:
        return Markup("")
    safe = str(escape(text))
    if not term:
        return Markup(safe)
    pattern = re.compile(re.escape(str(escape(term))), re.I)
    return Markup(pattern.sub(lambda m: f"<mark>{m.group(0)}</mark>", safe))


@app.route("/search")
def search():
    q_raw = request.args.get("q", "").strip()
    rows = []
    if q_raw:
        try:
            data = SearchInput.model_validate({"query": q_raw})
        except ValidationError:
            flash("Search terms must be 1–255 characters.")
        else:
            db = get_db()
            rows = search_items(data.query, db=db)
            user = current_user()
            if user is not None:
                log_search(user["id"], data.query, len(rows), db=db)
    hits = [
        dict(r, title_html=_highlight(r["title"], q_raw)) for r in rows
    ]
    return render_template_string(TEMPL_SEARCH, rows=hits, query=q_raw)


TEMPL_SEARCH = wrap("""
<div class="narrow">
    <h2>Search</h2>
    {% if query %}
        <p>{{ rows|length }} result{{ '' if rows|length == 1 else 's' }} for “{{ query }}”</p>
        <ul>
        {% for r in rows %}
            <li><a href="{{ url_for('item_detail', item_id=r['id']) }}">{{ r['title_html'] }}</a>
                <small style="color:#8a8ca3;">· {{ r['category_title'] }}</small></li>
        {% endfor %}
        </ul>
    {% endif %}
</div>
""")


@app.route("/login", methods=["GET", "POST"])
@rate_limit(max_requests=5, window=60)
def login():
    token = request.form.get("token", "").strip()

    if request.method == "POST":
        user = validate_token(token) if token else None
        if user is not None:
            # token matched → burn it right away
            db = get_db()
            db.execute(
                "UPDATE user SET token_hash=?, last_signed_in=? WHERE id=?",
                (hash_token(secrets.token_hex(16)), now_iso(), user["id"]),
            )
            db.commit()

            session.clear()
            session.permanent = True
            session["user_id"] = user["id"]
            session["role"] = user["role"]
            session["csrf"] = secrets.token_hex(16)
            return redirect(url_for("index"))
        app.logger.warning("rejected login attempt from %s", request.remote_addr)

    return render_template_string(TEMPL_LOGIN)


TEMPL_LOGIN = wrap("""
<div class="narrow">
    <h2>Sign in</h2>
    <form method="post" id="token-form">
        <label for="token">One-time token</label>
        <input id="token" name="token" type="password" autocomplete="current-password"
               style="width:100%;margin:.5rem 0 1rem;">
        <button type="submit">Sign in with Token</button>
    </form>
    <p style="color:#8a8ca3;font-size:.85em;">
        Ask an admin for a token, or run <code>flask --app opsmanual.manual token</code>.
    </p>
</div>
""")


@app.route("/logout")
def logout():
    session.clear()
    return redirect(url_for("index"))


@app.route("/robots.txt")
def robots():
    return (
        Response("User-agent: *\nDisallow: /api/\n", mimetype="text/plain"),
        200,
        {"Cache-Control": "public, max-age=86400"},
    )


# ── admin pages ────────────────────────────────────────────────────────
def _form_input(**extra) -> dict:
    """Form fields minus csrf/action; an empty ``order`` counts as not sent."""
    data = {k: v for k, v in request.form.items() if k not in ("csrf", "action")}
    if not data.get("order", "").strip():
        data.pop("order", None)
    data.update(extra)
    return data


def _flash_errors(exc: ValidationError) -> None:
    for err in exc.errors():
        field = ".".join(str(p) for p in err["loc"])
        flash(f"{field}: {err['msg']}")


@app.route("/admin", methods=["GET", "POST"])
def admin():
    admin_required()
    db = get_db()

    if request.method == "POST":
        action = request.form.get("action")
        try:
            if action == "create_category":
                data = CategoryCreate.model_validate(_form_input())
                row = create_category(
                    title=data.title,
                    description=data.description or None,
                    order=data.order,
                    db=db,
                )
                flash(f"Category “{row['title']}” created.")
            elif action == "create_item":
                data = ItemCreate.model_validate(_form_input())
                row = create_item(
                    data.category_id,
                    title=data.title,
                    content=data.content,
                    order=data.order,
                    db=db,
                )
                flash(f"Item “{row['title']}” created.")
            else:
                abort(400)
        except ValidationError as exc:
            _flash_errors(exc)
        return redirect(url_for("admin"))

    return render_template_string(
        TEMPL_ADMIN,
        tree=manual_tree(db=db),
        searches=recent_searches(db=db, limit=20),
        title=f"Admin · {site_name()}",
    )


TEMPL_ADMIN = wrap("""
<div class="narrow">
    <h2>Categories</h2>
    <table class="list">
        <tr><th>Order</th><th>Title</th><th>Items</th><th></th></tr>
        {% for cat in tree %}
        <tr>
            <td>{{ cat['ord'] }}</td>
            <td>{{ cat['title'] }}</td>
            <td>{{ cat['items']|length }}</td>
            <td>
                <a href="{{ url_for('edit_category', category_id=cat['id']) }}">Edit</a> ·
                <a href="{{ url_for('delete_category_page', category_id=cat['id']) }}">Delete</a>
            </td>
        </tr>
        {% endfor %}
    </table>
    <form method="post">
        <input type="hidden" name="csrf" value="{{ csrf_token() }}">
        <input type="hidden" name="action" value="create_category">
        <input name="title" placeholder="Category title" required maxlength="255">
        <input name="description" placeholder="Description">
        <input name="order" type="number" placeholder="Order" style="width:7rem">
        <button>Add category</button>
    </form>

    <h2>Items</h2>
    {% for cat in tree %}
        <h3>{{ cat['title'] }}</h3>
        <table class="list">
        {% for it in cat['items'] %}
            <tr>
                <td style="width:4rem">{{ it['ord'] }}</td>
                <td><a href="{{ url_for('item_detail', item_id=it['id']) }}">{{ it['title'] }}</a></td>
                <td style="width:12rem">
                    <a href="{{ url_for('edit_item', item_id=it['id']) }}">Edit</a> ·
                    <a href="{{ url_for('delete_item_page', item_id=it['id']) }}">Delete</a>
                </td>
            </tr>
        {% else %}
            <tr><td style="color:#8a8ca3;">No items yet.</td></tr>
        {% endfor %}
        </table>
    {% endfor %}
    {% if tree %}
    <form method="post">
        <input type="hidden" name="csrf" value="{{ csrf_token() }}">
        <input type="hidden" name="action" value="create_item">
        <select name="categoryId">
            {% for cat in tree %}<option value="{{ cat['id'] }}">{{ cat['title'] }}</option>{% endfor %}
        </select>
        <input name="title" placeholder="Item title" required maxlength="255">
        <input name="order" type="number" placeholder="Order" style="width:7rem">
        <textarea name="content" required
                  placeholder="**Heading**&#10;- bullet&#10;1. step&#10;or HTML"></textarea>
        <button>Add item</button>
    </form>
    {% endif %}

    {% if searches %}
    <h2>Recent searches</h2>
    <table class="list">
        {% for s in searches %}
        <tr><td>{{ s['created_at']|ts }}</td><td>{{ s['username'] }}</td>
            <td>{{ s['query'] }}</td><td>{{ s['result_count'] }}</td></tr>
        {% endfor %}
    </table>
    {% endif %}
</div>
""")


@app.route("/admin/categories/<int:category_id>/edit", methods=["GET", "POST"])
def edit_category(category_id: int):
    admin_required()
    db = get_db()
    row = get_category(category_id, db=db)

    if request.method == "POST":
        try:
            data = CategoryUpdate.model_validate(_form_input(id=category_id))
        except ValidationError as exc:
            _flash_errors(exc)
            return redirect(url_for("edit_category", category_id=category_id))
        changes = _changes(data)
        if "description" in changes:
            changes["description"] = changes["description"] or None
        update_category(category_id, changes, db=db)
        flash("Category saved.")
        return redirect(url_for("admin"))

    return render_template_string(TEMPL_EDIT_CATEGORY, c=row)


TEMPL_EDIT_CATEGORY = wrap("""
<div class="narrow">
    <h2>Edit category</h2>
    <form method="post">
        <input type="hidden" name="csrf" value="{{ csrf_token() }}">
        <label>Title <input name="title" value="{{ c['title'] }}" required maxlength="255" style="width:100%"></label>
        <label>Description <input name="description" value="{{ c['description'] or '' }}" style="width:100%"></label>
        <label>Order <input name="order" type="number" value="{{ c['ord'] }}"></label>
        <p><button>Save</button> <a href="{{ url_for('admin') }}">Cancel</a></p>
    </form>
</div>
""")


@app.route("/admin/categories/<int:category_id>/delete", methods=["GET", "POST"])
def delete_category_page(category_id: int):
    admin_required()
    db = get_db()
    row = get_category(category_id, db=db)

    if request.method == "POST":
        r2_delete(delete_category(category_id, db=db))
        flash(f"Category “{row['title']}” deleted.")
        return redirect(url_for("admin"))

    n_items = len(list_items(category_id, db=db))
    return render_template_string(
        TEMPL_DELETE,
        what="category",
        name=row["title"],
        note=f"{n_items} item(s) will be deleted with it.",
    )


@app.route("/admin/items/<int:item_id>/edit", methods=["GET", "POST"])
def edit_item(item_id: int):
    admin_required()
    db = get_db()
    row = get_item(item_id, db=db)

    if request.method == "POST":
        try:
            data = ItemUpdate.model_validate(_form_input(id=item_id))
        except ValidationError as exc:
            _flash_errors(exc)
            return redirect(url_for("edit_item", item_id=item_id))
        update_item(item_id, _changes(data), db=db)
        flash("Item saved.")
        return redirect(url_for("edit_item", item_id=item_id))

    return render_template_string(
        TEMPL_EDIT_ITEM,
        it=row,
        images=list_item_images(item_id, db=db),
        title=f"Edit {row['title']} · {site_name()}",
    )


TEMPL_EDIT_ITEM = wrap("""
<div class="narrow">
    <div class="crumbs">{{ it['category_title'] }} / <strong>{{ it['title'] }}</strong></div>
    <h2>Edit item</h2>
    <form method="post">
        <input type="hidden" name="csrf" value="{{ csrf_token() }}">
        <label>Title <input name="title" value="{{ it['title'] }}" required maxlength="255" style="width:100%"></label>
        <label>Order <input name="order" type="number" value="{{ it['ord'] }}"></label>
        <label>Content <textarea name="content" required>{{ it['content'] }}</textarea></label>
        <p><button>Save</button> <a href="{{ url_for('item_detail', item_id=it['id']) }}">View</a></p>
    </form>

    <h3>Preview</h3>
    <div class="card content">{{ it['content']|content }}</div>

    <h3>Images</h3>
    <table class="list">
    {% for img in images %}
        <tr>
            <td style="width:8rem"><img src="{{ img['image_url'] }}" alt="{{ img['image_name'] }}" style="max-width:7rem"></td>
            <td>{{ img['image_name'] }} <small>{{ img['size']|filesize }}</small></td>
            <td>
                <form method="post" action="{{ url_for('image_order', image_id=img['id']) }}" style="display:inline">
                    <input type="hidden" name="csrf" value="{{ csrf_token() }}">
                    <input name="order" type="number" value="{{ img['ord'] }}" style="width:6rem">
                    <button>Move</button>
                </form>
                <form method="post" action="{{ url_for('image_delete', image_id=img['id']) }}" style="display:inline">
                    <input type="hidden" name="csrf" value="{{ csrf_token() }}">
                    <button class="danger">Remove</button>
                </form>
            </td>
        </tr>
    {% else %}
        <tr><td style="color:#8a8ca3;">No images.</td></tr>
    {% endfor %}
    </table>
    {% if r2_enabled() %}
    <form method="post" enctype="multipart/form-data"
          action="{{ url_for('item_image_upload', item_id=it['id']) }}">
        <input type="hidden" name="csrf" value="{{ csrf_token() }}">
        <input type="file" name="file" accept="image/*" required>
        <button>Upload image</button>
    </form>
    {% else %}
        <p style="color:#8a8ca3;">Configure R2 in <a href="{{ url_for('settings') }}">Settings</a> to upload images.</p>
    {% endif %}
</div>
""")


@app.route("/admin/items/<int:item_id>/delete", methods=["GET", "POST"])
def delete_item_page(item_id: int):
    admin_required()
    db = get_db()
    row = get_item(item_id, db=db)

    if request.method == "POST":
        r2_delete(delete_item(item_id, db=db))
        flash(f"Item “{row['title']}” deleted.")
        return redirect(url_for("admin"))

    return render_template_string(
        TEMPL_DELETE, what="item", name=row["title"], note=row["category_title"]
    )


TEMPL_DELETE = wrap("""
<div class="narrow">
    <h2>Delete {{ what }}?</h2>
    <article style="border-left:3px solid #c0392b;padding-left:1rem;">
        <h3>{{ name }}</h3>
        {% if note %}<p style="color:#8a8ca3;">{{ note }}</p>{% endif %}
    </article>
    <form method="post" style="margin-top:1rem;">
        <input type="hidden" name="csrf" value="{{ csrf_token() }}">
        <button class="danger">Yes – delete it</button>
        <a href="{{ url_for('admin') }}" style="margin-left:1rem;">Cancel</a>
    </form>
</div>
""")


@app.route("/admin/items/<int:item_id>/images", methods=["POST"])
def item_image_upload(item_id: int):
    admin_required()
    store_item_image(item_id)
    flash("Image uploaded.")
    return redirect(url_for("edit_item", item_id=item_id))


@app.route("/admin/images/<int:image_id>/order", methods=["POST"])
def image_order(image_id: int):
    admin_required()
    try:
        data = ImageOrderInput.model_validate(_form_input(id=image_id))
    except ValidationError as exc:
        _flash_errors(exc)
        data = None
    db = get_db()
    row = get_item_image(image_id, db=db)
    if data is not None:
        reorder_item_image(image_id, data.order, db=db)
    return redirect(url_for("edit_item", item_id=row["item_id"]))


@app.route("/admin/images/<int:image_id>/delete", methods=["POST"])
def image_delete(image_id: int):
    admin_required()
    db = get_db()
    row = get_item_image(image_id, db=db)
    r2_delete([delete_item_image(image_id, db=db)])
    flash("Image removed.")
    return redirect(url_for("edit_item", item_id=row["item_id"]))


# ── file manager ───────────────────────────────────────────────────────
@app.route("/files", methods=["GET", "POST"])
def files():
    user = login_required()
    if request.method == "POST":
        row = store_file(user, description=request.form.get("description", "").strip() or None)
        flash(f"“{row['name']}” uploaded.")
        return redirect(url_for("files"))

    return render_template_string(
        TEMPL_FILES, rows=list_files(db=get_db()), me=user, title=f"Files · {site_name()}"
    )


@app.route("/files/<int:file_id>/download")
def file_download(file_id: int):
    login_required()
    row = get_file(file_id, db=get_db())
    return redirect(presigned_url(require_r2(), row["key"]))


@app.route("/files/<int:file_id>/delete", methods=["POST"])
def file_delete(file_id: int):
    user = login_required()
    db = get_db()
    row = get_file(file_id, db=db)
    _file_manager_check(row, user)
    r2_delete([delete_file(file_id, db=db)])
    flash(f"“{row['name']}” deleted.")
    return redirect(url_for("files"))


TEMPL_FILES = wrap("""
<div class="narrow">
    <h2>Files</h2>
    <table class="list">
        <tr><th>Name</th><th>Size</th><th>Uploaded</th><th></th></tr>
        {% for f in rows %}
        <tr>
            <td><a href="{{ url_for('file_download', file_id=f['id']) }}">{{ f['name'] }}</a>
                {% if f['description'] %}<br><small>{{ f['description'] }}</small>{% endif %}</td>
            <td>{{ f['size']|filesize }}</td>
            <td>{{ f['created_at']|ts }} · {{ f['uploader'] }}</td>
            <td>
            {% if f['uploaded_by'] == me['id'] or me['role'] == 'admin' %}
                <form method="post" action="{{ url_for('file_delete', file_id=f['id']) }}" style="margin:0">
                    <input type="hidden" name="csrf" value="{{ csrf_token() }}">
                    <button class="danger">Delete</button>
                </form>
            {% endif %}
            </td>
        </tr>
        {% else %}
        <tr><td style="color:#8a8ca3;">No files yet.</td></tr>
        {% endfor %}
    </table>
    {% if r2_enabled() %}
    <form method="post" enctype="multipart/form-data">
        <input type="hidden" name="csrf" value="{{ csrf_token() }}">
        <input type="file" name="file" required>
        <input name="description" placeholder="Description">
        <button>Upload</button>
    </form>
    {% else %}
        <p style="color:#8a8ca3;">File uploads are not configured.</p>
    {% endif %}
</div>
""")


# ── settings ───────────────────────────────────────────────────────────
@app.route("/settings", methods=["GET", "POST"])
def settings():
    user = admin_required()
    db = get_db()

    if request.method == "POST" and request.form.get("action") == "rotate_token":
        session["one_time_token"] = _issue_token(db, user["id"])
        return redirect(url_for("settings") + "#new-token", code=303)

    if request.method == "POST":
        name = request.form.get("site_name", "").strip()
        if name:
            set_setting("site_name", name)
        tz = request.form.get("timezone", "").strip()
        if tz in available_timezones():
            set_setting("timezone", tz)

        r2_updates = {}
        for env_key in R2_ENV_KEYS:
            raw = request.form.get(env_key.lower(), "").strip()
            if raw:
                r2_updates[env_key] = raw
        if r2_updates:
            merge_env(r2_updates)

        flash("Settings saved.")
        return redirect(url_for("settings"))

    cfg = r2_config()
    return render_template_string(
        TEMPL_SETTINGS,
        new_token=session.pop("one_time_token", None),
        tz=tz_name(),
        r2_status={k: bool(cfg.get(k)) for k in R2_ENV_KEYS},
        title=f"Settings · {site_name()}",
    )


TEMPL_SETTINGS = wrap("""
<div class="narrow">
    <h2>Site settings</h2>
    <form method="post">
        <input type="hidden" name="csrf" value="{{ csrf_token() }}">
        <label>Site name <input name="site_name" value="{{ site_name() }}" style="width:100%"></label>
        <label>Timezone <input name="timezone" value="{{ tz }}"></label>
        <h3>Object storage (R2)</h3>
        {% for key, is_set in r2_status.items() %}
            <label>{{ key }} {% if is_set %}<small>(set)</small>{% endif %}
                <input name="{{ key|lower }}" type="{{ 'password' if 'SECRET' in key else 'text' }}"
                       autocomplete="off" style="width:100%"></label>
        {% endfor %}
        <p><button>Save</button></p>
    </form>

    <h3 id="new-token">Login token</h3>
    {% if new_token %}
        <p>New one-time token (valid for a minute):</p>
        <pre style="white-space:pre-wrap;word-break:break-all;">{{ new_token }}</pre>
    {% endif %}
    <form method="post">
        <input type="hidden" name="csrf" value="{{ csrf_token() }}">
        <input type="hidden" name="action" value="rotate_token">
        <button>Generate a new token</button>
    </form>
</div>
""")


###############################################################################
# Error handlers
###############################################################################
def _wants_json() -> bool:
    return request.path.startswith("/api/")


@app.errorhandler(ApiError)
def api_error(exc: ApiError):
    if _wants_json():
        body = {"code": exc.code, "message": exc.message}
        if exc.details:
            body["details"] = exc.details
        return {"error": body}, exc.status
    if exc.status == 404:
        return not_found(exc)
    if exc.status == 401:
        return redirect(url_for("login"))
    return render_template_string(TEMPL_ERROR, status=exc.status, message=exc.message), exc.status


@app.errorhandler(ValidationError)
def validation_error(exc: ValidationError):
    details = json.loads(exc.json(include_url=False))
    return api_error(BadRequest("Invalid input.", details=details))


@app.errorhandler(404)
def not_found(exc):
    """Site-wide “Not Found” page."""
    if _wants_json():
        return {"error": {"code": "NOT_FOUND", "message": "Not found."}}, 404
    return render_template_string(TEMPL_404), 404


@app.errorhandler(405)
def method_not_allowed(exc):
    """Verbs the /api/ route does not even register (PUT, DELETE, …)."""
    if not _wants_json():
        return exc
    headers = {"Allow": ", ".join(exc.valid_methods)} if exc.valid_methods else {}
    body = {"code": MethodNotAllowed.code, "message": "Use GET for queries and POST for mutations."}
    return {"error": body}, 405, headers


@app.errorhandler(500)
def internal_error(exc):
    """
    Generic 500 page for production.  With debug on, Flask bypasses this
    handler and the Werkzeug debugger shows the traceback instead.
    """
    if _wants_json():
        return {
            "error": {"code": "INTERNAL_SERVER_ERROR", "message": "Internal error."}
        }, 500
    return render_template_string(TEMPL_500), 500


TEMPL_404 = wrap("""
<div class="narrow">
  <h2>Page not found</h2>
  <p>The page you asked for doesn’t exist.
     <a href="{{ url_for('index') }}">Back to the manual</a>.</p>
</div>
""")

TEMPL_500 = wrap("""
<div class="narrow">
  <h2>Internal Server Error</h2>
  <p>Our fault, not yours. Please try again in a minute.</p>
</div>
""")

TEMPL_ERROR = wrap("""
<div class="narrow">
  <h2>Error {{ status }}</h2>
  <p>{{ message }}</p>
  <p><a href="{{ url_for('index') }}">Back to the manual</a></p>
</div>
""")
