from __future__ import annotations

import json
import os
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable

from .settings import settings


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _resolve_db_path() -> str:
    """Return a file path usable by sqlite.

    If a bind-mounted file path does not exist, Docker creates a directory at
    that location; in that case the DB file is placed inside it.
    """

    p = os.path.abspath(settings.db_path)

    if os.path.isdir(p):
        p = os.path.join(p, "fdp.db")

    parent = os.path.dirname(p)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)

    return p


def connect() -> sqlite3.Connection:
    conn = sqlite3.connect(_resolve_db_path(), check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


def init_db() -> None:
    """Create tables if they do not exist."""
    with connect() as conn:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS images (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              repository TEXT NOT NULL,
              tag TEXT NOT NULL,
              digest TEXT NOT NULL,
              commit_sha TEXT,
              pushed_at TEXT NOT NULL,
              UNIQUE(repository, tag)
            );

            CREATE TABLE IF NOT EXISTS task_revisions (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              family TEXT NOT NULL,
              revision INTEGER NOT NULL,
              images TEXT NOT NULL, -- json list of image uris
              body TEXT NOT NULL,   -- json task definition
              created_at TEXT NOT NULL,
              UNIQUE(family, revision)
            );

            CREATE TABLE IF NOT EXISTS services (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              name TEXT NOT NULL UNIQUE,
              cluster TEXT NOT NULL,
              family TEXT NOT NULL,
              desired_count INTEGER NOT NULL,
              active_revision INTEGER, -- revision number within family
              created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS deployments (
              id TEXT PRIMARY KEY,
              service_name TEXT NOT NULL,
              revision INTEGER NOT NULL,
              previous_revision INTEGER,
              state TEXT NOT NULL, -- in_progress|completed|failed
              message TEXT NOT NULL,
              created_at TEXT NOT NULL,
              updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS tasks (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              task_id TEXT NOT NULL UNIQUE,
              service_name TEXT NOT NULL,
              revision INTEGER NOT NULL,
              container_id TEXT NOT NULL,
              base_url TEXT NOT NULL,
              status TEXT NOT NULL, -- running|stopped
              restart_count INTEGER NOT NULL DEFAULT 0,
              created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS pipeline_runs (
              id TEXT PRIMARY KEY,
              commit_sha TEXT NOT NULL,
              branch TEXT NOT NULL,
              service_name TEXT NOT NULL,
              state TEXT NOT NULL,
              image_tag TEXT,
              image_uri TEXT,
              task_revision TEXT,
              deployment_id TEXT,
              failed_step TEXT,
              message TEXT NOT NULL,
              created_at TEXT NOT NULL,
              updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS events (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              ts TEXT NOT NULL,
              level TEXT NOT NULL,
              service_name TEXT,
              ref TEXT,
              message TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
            CREATE INDEX IF NOT EXISTS idx_tasks_service ON tasks(service_name, status);
            """
        )


def log_event(level: str, message: str, service_name: str | None = None, ref: str | None = None) -> None:
    with connect() as conn:
        conn.execute(
            "INSERT INTO events (ts, level, service_name, ref, message) VALUES (?, ?, ?, ?, ?)",
            (utc_now(), level.upper(), service_name, ref, message),
        )


def latest_events(limit: int = 100, ref: str | None = None) -> list[dict[str, Any]]:
    with connect() as conn:
        if ref:
            rows = conn.execute(
                "SELECT * FROM events WHERE ref=? ORDER BY id DESC LIMIT ?", (ref, limit)
            ).fetchall()
        else:
            rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return [dict(r) for r in rows]


@dataclass(frozen=True)
class ImageRow:
    id: int
    repository: str
    tag: str
    digest: str
    commit_sha: str | None
    pushed_at: str


@dataclass(frozen=True)
class TaskRevisionRow:
    id: int
    family: str
    revision: int
    images: str
    body: str
    created_at: str

    @property
    def name(self) -> str:
        return f"{self.family}:{self.revision}"

    @property
    def image_list(self) -> list[str]:
        return list(json.loads(self.images))

    @property
    def definition(self) -> dict[str, Any]:
        return json.loads(self.body)


@dataclass(frozen=True)
class ServiceRow:
    id: int
    name: str
    cluster: str
    family: str
    desired_count: int
    active_revision: int | None
    created_at: str


@dataclass(frozen=True)
class DeploymentRow:
    id: str
    service_name: str
    revision: int
    previous_revision: int | None
    state: str
    message: str
    created_at: str
    updated_at: str


@dataclass(frozen=True)
class TaskRow:
    id: int
    task_id: str
    service_name: str
    revision: int
    container_id: str
    base_url: str
    status: str
    restart_count: int
    created_at: str


@dataclass(frozen=True)
class PipelineRunRow:
    id: str
    commit_sha: str
    branch: str
    service_name: str
    state: str
    image_tag: str | None
    image_uri: str | None
    task_revision: str | None
    deployment_id: str | None
    failed_step: str | None
    message: str
    created_at: str
    updated_at: str


def _rows_to_dataclass(rows: Iterable[sqlite3.Row], cls: Any) -> list[Any]:
    out: list[Any] = []
    for r in rows:
        out.append(cls(**dict(r)))
    return out


# --- images ---

def get_image(repository: str, tag: str) -> ImageRow | None:
    with connect() as conn:
        row = conn.execute("SELECT * FROM images WHERE repository=? AND tag=?", (repository, tag)).fetchone()
        return ImageRow(**dict(row)) if row else None


def insert_image(repository: str, tag: str, digest: str, commit_sha: str | None) -> ImageRow:
    with connect() as conn:
        conn.execute(
            "INSERT INTO images (repository, tag, digest, commit_sha, pushed_at) VALUES (?, ?, ?, ?, ?)",
            (repository, tag, digest, commit_sha, utc_now()),
        )
        row = conn.execute("SELECT * FROM images WHERE repository=? AND tag=?", (repository, tag)).fetchone()
        return ImageRow(**dict(row))


def list_images(repository: str | None = None) -> list[ImageRow]:
    with connect() as conn:
        if repository:
            rows = conn.execute("SELECT * FROM images WHERE repository=? ORDER BY id", (repository,)).fetchall()
        else:
            rows = conn.execute("SELECT * FROM images ORDER BY id").fetchall()
        return _rows_to_dataclass(rows, ImageRow)


# --- task revisions ---

def register_task_revision(family: str, images: list[str], body: dict[str, Any]) -> TaskRevisionRow:
    with connect() as conn:
        cur = conn.execute("SELECT COALESCE(MAX(revision), 0) + 1 FROM task_revisions WHERE family=?", (family,))
        revision = int(cur.fetchone()[0])
        conn.execute(
            "INSERT INTO task_revisions (family, revision, images, body, created_at) VALUES (?, ?, ?, ?, ?)",
            (family, revision, json.dumps(images), json.dumps(body, sort_keys=True), utc_now()),
        )
        row = conn.execute(
            "SELECT * FROM task_revisions WHERE family=? AND revision=?", (family, revision)
        ).fetchone()
        return TaskRevisionRow(**dict(row))


def get_task_revision(family: str, revision: int) -> TaskRevisionRow | None:
    with connect() as conn:
        row = conn.execute(
            "SELECT * FROM task_revisions WHERE family=? AND revision=?", (family, revision)
        ).fetchone()
        return TaskRevisionRow(**dict(row)) if row else None


def list_task_revisions(family: str) -> list[TaskRevisionRow]:
    with connect() as conn:
        rows = conn.execute(
            "SELECT * FROM task_revisions WHERE family=? ORDER BY revision DESC", (family,)
        ).fetchall()
        return _rows_to_dataclass(rows, TaskRevisionRow)


# --- services ---

def get_or_create_service(name: str, cluster: str, family: str, desired_count: int) -> ServiceRow:
    with connect() as conn:
        row = conn.execute("SELECT * FROM services WHERE name=?", (name,)).fetchone()
        if row:
            return ServiceRow(**dict(row))
        conn.execute(
            "INSERT INTO services (name, cluster, family, desired_count, created_at) VALUES (?, ?, ?, ?, ?)",
            (name, cluster, family, desired_count, utc_now()),
        )
        row = conn.execute("SELECT * FROM services WHERE name=?", (name,)).fetchone()
        return ServiceRow(**dict(row))


def get_service(name: str) -> ServiceRow | None:
    with connect() as conn:
        row = conn.execute("SELECT * FROM services WHERE name=?", (name,)).fetchone()
        return ServiceRow(**dict(row)) if row else None


def list_services() -> list[ServiceRow]:
    with connect() as conn:
        rows = conn.execute("SELECT * FROM services ORDER BY name").fetchall()
        return _rows_to_dataclass(rows, ServiceRow)


def set_active_revision(service_name: str, revision: int) -> None:
    with connect() as conn:
        conn.execute("UPDATE services SET active_revision=? WHERE name=?", (revision, service_name))


def set_desired_count(service_name: str, desired_count: int) -> None:
    with connect() as conn:
        conn.execute("UPDATE services SET desired_count=? WHERE name=?", (desired_count, service_name))


# --- deployments ---

def insert_deployment(deployment_id: str, service_name: str, revision: int, previous_revision: int | None) -> DeploymentRow:
    now = utc_now()
    with connect() as conn:
        conn.execute(
            """
            INSERT INTO deployments (id, service_name, revision, previous_revision, state, message, created_at, updated_at)
            VALUES (?, ?, ?, ?, 'in_progress', 'Deployment created', ?, ?)
            """,
            (deployment_id, service_name, revision, previous_revision, now, now),
        )
        row = conn.execute("SELECT * FROM deployments WHERE id=?", (deployment_id,)).fetchone()
        return DeploymentRow(**dict(row))


def update_deployment(deployment_id: str, state: str, message: str) -> None:
    with connect() as conn:
        conn.execute(
            "UPDATE deployments SET state=?, message=?, updated_at=? WHERE id=?",
            (state, message, utc_now(), deployment_id),
        )


def get_deployment(deployment_id: str) -> DeploymentRow | None:
    with connect() as conn:
        row = conn.execute("SELECT * FROM deployments WHERE id=?", (deployment_id,)).fetchone()
        return DeploymentRow(**dict(row)) if row else None


def list_deployments(service_name: str) -> list[DeploymentRow]:
    with connect() as conn:
        rows = conn.execute(
            "SELECT * FROM deployments WHERE service_name=? ORDER BY created_at DESC, rowid DESC", (service_name,)
        ).fetchall()
        return _rows_to_dataclass(rows, DeploymentRow)


# --- tasks ---

def insert_task(task_id: str, service_name: str, revision: int, container_id: str, base_url: str) -> TaskRow:
    with connect() as conn:
        conn.execute(
            """
            INSERT INTO tasks (task_id, service_name, revision, container_id, base_url, status, created_at)
            VALUES (?, ?, ?, ?, ?, 'running', ?)
            """,
            (task_id, service_name, revision, container_id, base_url, utc_now()),
        )
        row = conn.execute("SELECT * FROM tasks WHERE task_id=?", (task_id,)).fetchone()
        return TaskRow(**dict(row))


def list_tasks(service_name: str, revision: int | None = None, status: str | None = "running") -> list[TaskRow]:
    query = "SELECT * FROM tasks WHERE service_name=?"
    params: list[Any] = [service_name]
    if revision is not None:
        query += " AND revision=?"
        params.append(revision)
    if status is not None:
        query += " AND status=?"
        params.append(status)
    query += " ORDER BY id"
    with connect() as conn:
        rows = conn.execute(query, params).fetchall()
        return _rows_to_dataclass(rows, TaskRow)


def get_task(task_id: str) -> TaskRow | None:
    with connect() as conn:
        row = conn.execute("SELECT * FROM tasks WHERE task_id=?", (task_id,)).fetchone()
        return TaskRow(**dict(row)) if row else None


def mark_task_stopped(task_id: str) -> None:
    with connect() as conn:
        conn.execute("UPDATE tasks SET status='stopped' WHERE task_id=?", (task_id,))


def set_restart_count(task_id: str, restart_count: int) -> None:
    with connect() as conn:
        conn.execute("UPDATE tasks SET restart_count=? WHERE task_id=?", (restart_count, task_id))


# --- pipeline runs ---

def insert_run(run_id: str, commit_sha: str, branch: str, service_name: str) -> PipelineRunRow:
    now = utc_now()
    with connect() as conn:
        conn.execute(
            """
            INSERT INTO pipeline_runs (id, commit_sha, branch, service_name, state, message, created_at, updated_at)
            VALUES (?, ?, ?, ?, 'triggered', 'Run triggered', ?, ?)
            """,
            (run_id, commit_sha, branch, service_name, now, now),
        )
        row = conn.execute("SELECT * FROM pipeline_runs WHERE id=?", (run_id,)).fetchone()
        return PipelineRunRow(**dict(row))


_RUN_COLUMNS = {"state", "image_tag", "image_uri", "task_revision", "deployment_id", "failed_step", "message"}


def update_run(run_id: str, **fields: Any) -> None:
    unknown = set(fields) - _RUN_COLUMNS
    if unknown:
        raise ValueError(f"Unknown pipeline_runs columns: {sorted(unknown)}")
    if not fields:
        return
    cols = sorted(fields)
    assignments = ", ".join(f"{c}=?" for c in cols)
    with connect() as conn:
        conn.execute(
            f"UPDATE pipeline_runs SET {assignments}, updated_at=? WHERE id=?",
            [fields[c] for c in cols] + [utc_now(), run_id],
        )


def get_run(run_id: str) -> PipelineRunRow | None:
    with connect() as conn:
        row = conn.execute("SELECT * FROM pipeline_runs WHERE id=?", (run_id,)).fetchone()
        return PipelineRunRow(**dict(row)) if row else None


def list_runs(limit: int = 50) -> list[PipelineRunRow]:
    with connect() as conn:
        rows = conn.execute(
            "SELECT * FROM pipeline_runs ORDER BY created_at DESC, rowid DESC LIMIT ?", (limit,)
        ).fetchall()
        return _rows_to_dataclass(rows, PipelineRunRow)
