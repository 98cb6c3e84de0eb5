"""Task queue backing the job manager (SQLite or Redis)."""
from __future__ import annotations

import json
import os
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from hashlib import sha1
from typing import List, Optional, Sequence

try:  # pragma: no cover - optional import for redis-backed queue
    import redis
    from redis.exceptions import WatchError
except ImportError:  # pragma: no cover
    redis = None
    WatchError = Exception  # type: ignore[misc,assignment]


STATUS_PENDING = "pending"
STATUS_IN_PROGRESS = "in_progress"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"

_QUEUE_PREFIX = os.getenv("OUTBOX_TASK_QUEUE_PREFIX", "outbox:task_queue")
_READY_KEY_SUFFIX = ":ready"
_DELAYED_KEY_SUFFIX = ":delayed"
_IN_PROGRESS_KEY_SUFFIX = ":in_progress"
_TASK_KEY_SUFFIX = ":task:"
_DEPENDENTS_KEY_SUFFIX = ":dependents:"
_QUEUE_LOCK_KEY_SUFFIX = ":queue_lock:"
_PROMOTION_BATCH_SIZE = 128

_redis_clients: dict[str, "redis.Redis"] = {}

QUEUE_SCHEMA = """
CREATE TABLE IF NOT EXISTS task_queue (
    task_id TEXT PRIMARY KEY,
    task_type TEXT NOT NULL,
    status TEXT NOT NULL,
    payload TEXT NOT NULL,
    queue_key TEXT,
    attempts INTEGER NOT NULL DEFAULT 0,
    available_at TEXT NOT NULL,
    locked_at TEXT,
    last_error TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
)
"""

DEPENDENCY_SCHEMA = """
CREATE TABLE IF NOT EXISTS task_dependencies (
    task_id TEXT NOT NULL,
    depends_on TEXT NOT NULL,
    PRIMARY KEY (task_id, depends_on)
)
"""


@dataclass
class Task:
    task_id: str
    task_type: str
    payload: dict
    attempts: int
    available_at: datetime
    locked_at: Optional[datetime]
    last_error: Optional[str]
    queue_key: Optional[str] = None
    depends_on: List[str] = field(default_factory=list)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_queue_tables(conn: sqlite3.Connection) -> None:
    conn.execute(QUEUE_SCHEMA)
    conn.execute(DEPENDENCY_SCHEMA)


def compute_task_id(task_type: str, payload: dict) -> str:
    raw = f"{task_type}:{json.dumps(payload, sort_keys=True)}"
    return sha1(raw.encode("utf-8")).hexdigest()


def _is_redis_target(target: str) -> bool:
    lowered = target.lower()
    return lowered.startswith(("redis://", "rediss://", "unix://"))


def _ensure_redis() -> None:
    if redis is None:  # pragma: no cover - runtime guard
        raise RuntimeError(
            "Redis support is not available. Install the 'redis' package to use the Redis task queue."
        )


def _get_redis_client(redis_url: str) -> "redis.Redis":
    _ensure_redis()
    client = _redis_clients.get(redis_url)
    if client is None:
        client = redis.Redis.from_url(redis_url, decode_responses=True)
        _redis_clients[redis_url] = client
    return client


def _ready_key(_: str) -> str:
    return f"{_QUEUE_PREFIX}{_READY_KEY_SUFFIX}"


def _delayed_key(_: str) -> str:
    return f"{_QUEUE_PREFIX}{_DELAYED_KEY_SUFFIX}"


def _in_progress_key(_: str) -> str:
    return f"{_QUEUE_PREFIX}{_IN_PROGRESS_KEY_SUFFIX}"


def _task_key(task_id: str) -> str:
    return f"{_QUEUE_PREFIX}{_TASK_KEY_SUFFIX}{task_id}"


def _dependents_key(task_id: str) -> str:
    return f"{_QUEUE_PREFIX}{_DEPENDENTS_KEY_SUFFIX}{task_id}"


def _queue_lock_key(queue_key: str) -> str:
    return f"{_QUEUE_PREFIX}{_QUEUE_LOCK_KEY_SUFFIX}{queue_key}"


def enqueue_task(
    queue_target: str,
    task_type: str,
    payload: dict,
    *,
    available_at: Optional[datetime] = None,
    depends_on: Sequence[str] = (),
    queue_key: Optional[str] = None,
) -> str:
    """Add a task and return its content-addressed id.

    A task listing ``depends_on`` is never handed out while any of those
    tasks is still present in the queue.
    """
    target = str(queue_target)
    if _is_redis_target(target):
        return _redis_enqueue_task(
            target,
            task_type,
            payload,
            available_at=available_at,
            depends_on=depends_on,
            queue_key=queue_key,
        )
    return _sqlite_enqueue_task(
        target,
        task_type,
        payload,
        available_at=available_at,
        depends_on=depends_on,
        queue_key=queue_key,
    )


def fetch_and_lock_task(
    queue_target: str,
    *,
    task_types: Optional[Sequence[str]] = None,
    lock_timeout_seconds: int = 300,
) -> Optional[Task]:
    target = str(queue_target)
    if _is_redis_target(target):
        return _redis_fetch_and_lock_task(
            target,
            task_types=task_types,
            lock_timeout_seconds=lock_timeout_seconds,
        )
    return _sqlite_fetch_and_lock_task(
        target,
        task_types=task_types,
        lock_timeout_seconds=lock_timeout_seconds,
    )


def complete_task(queue_target: str, task_id: str) -> None:
    target = str(queue_target)
    if _is_redis_target(target):
        _redis_complete_task(target, task_id)
    else:
        _sqlite_complete_task(target, task_id)


def fail_task(
    queue_target: str,
    task_id: str,
    *,
    error: str,
    retry_delay_seconds: int = 300,
    max_attempts: int = 5,
) -> List[Task]:
    """Record a failed attempt.

    Returns every task that became terminally failed as a result: empty when
    the task was rescheduled, otherwise the task itself followed by the
    dependents failed along with it.
    """
    target = str(queue_target)
    if _is_redis_target(target):
        return _redis_fail_task(
            target,
            task_id,
            error=error,
            retry_delay_seconds=retry_delay_seconds,
            max_attempts=max_attempts,
        )
    return _sqlite_fail_task(
        target,
        task_id,
        error=error,
        retry_delay_seconds=retry_delay_seconds,
        max_attempts=max_attempts,
    )


def cancel_task(queue_target: str, task_id: str, *, reason: str = "canceled") -> List[Task]:
    """Fail a task and everything depending on it without further attempts."""
    target = str(queue_target)
    if _is_redis_target(target):
        return _redis_cancel_task(target, task_id, reason=reason)
    return _sqlite_cancel_task(target, task_id, reason=reason)


def get_task(queue_target: str, task_id: str) -> Optional[Task]:
    target = str(queue_target)
    if _is_redis_target(target):
        return _redis_get_task(target, task_id)
    with sqlite3.connect(target) as conn:
        ensure_queue_tables(conn)
        return _sqlite_load_task(conn, task_id)


_TASK_COLUMNS = "task_id, task_type, payload, attempts, available_at, locked_at, last_error, queue_key"


def _task_from_row(row: Sequence, depends_on: Sequence[str] = ()) -> Task:
    task_id, task_type, payload_json, attempts, available_at, locked_at, last_error, queue_key = row
    return Task(
        task_id=task_id,
        task_type=task_type,
        payload=json.loads(payload_json),
        attempts=attempts,
        available_at=datetime.fromisoformat(available_at),
        locked_at=datetime.fromisoformat(locked_at) if locked_at else None,
        last_error=last_error,
        queue_key=queue_key,
        depends_on=list(depends_on),
    )


def _sqlite_dependencies(conn: sqlite3.Connection, task_id: str) -> List[str]:
    rows = conn.execute(
        "SELECT depends_on FROM task_dependencies WHERE task_id = ? ORDER BY depends_on",
        (task_id,),
    ).fetchall()
    return [row[0] for row in rows]


def _sqlite_load_task(conn: sqlite3.Connection, task_id: str) -> Optional[Task]:
    row = conn.execute(
        f"SELECT {_TASK_COLUMNS} FROM task_queue WHERE task_id = ?",
        (task_id,),
    ).fetchone()
    if not row:
        return None
    return _task_from_row(row, _sqlite_dependencies(conn, task_id))


def _sqlite_enqueue_task(
    database_path: str,
    task_type: str,
    payload: dict,
    *,
    available_at: Optional[datetime] = None,
    depends_on: Sequence[str] = (),
    queue_key: Optional[str] = None,
) -> str:
    task_id = compute_task_id(task_type, payload)
    now = _now()
    available = (available_at or now).isoformat()
    with sqlite3.connect(database_path) as conn:
        ensure_queue_tables(conn)
        conn.execute(
            """
            INSERT INTO task_queue (
                task_id, task_type, status, payload, queue_key, attempts,
                available_at, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, 0, ?, ?, ?)
            ON CONFLICT(task_id) DO UPDATE SET
                status = CASE
                    WHEN task_queue.status IN ('completed','failed') THEN excluded.status
                    ELSE task_queue.status
                END,
                attempts = CASE
                    WHEN task_queue.status = 'failed' THEN 0
                    ELSE task_queue.attempts
                END,
                queue_key = excluded.queue_key,
                available_at = excluded.available_at,
                updated_at = excluded.updated_at
            """,
            (
                task_id,
                task_type,
                STATUS_PENDING,
                json.dumps(payload, sort_keys=True),
                queue_key,
                available,
                now.isoformat(),
                now.isoformat(),
            ),
        )
        conn.executemany(
            "INSERT OR IGNORE INTO task_dependencies (task_id, depends_on) VALUES (?, ?)",
            [(task_id, dependency) for dependency in depends_on if dependency != task_id],
        )
    return task_id


def _sqlite_fetch_and_lock_task(
    database_path: str,
    *,
    task_types: Optional[Sequence[str]] = None,
    lock_timeout_seconds: int = 300,
) -> Optional[Task]:
    now = _now()
    lock_deadline = (now - timedelta(seconds=lock_timeout_seconds)).isoformat()
    with sqlite3.connect(database_path) as conn:
        ensure_queue_tables(conn)
        conn.execute("BEGIN IMMEDIATE")
        type_clause = ""
        params: tuple = ()
        if task_types:
            placeholder = ",".join("?" for _ in task_types)
            type_clause = f"AND t.task_type IN ({placeholder})"
            params = tuple(task_types)
        query = f"""
            SELECT t.task_id, t.task_type, t.payload, t.attempts, t.available_at,
                   t.locked_at, t.last_error, t.queue_key
            FROM task_queue AS t
            WHERE t.status IN ('pending', 'in_progress')
              {type_clause}
              AND (
                    (t.status = 'pending' AND t.available_at <= ?)
                 OR (t.status = 'in_progress' AND t.locked_at <= ?)
              )
              AND NOT EXISTS (
                    SELECT 1 FROM task_dependencies AS d
                    JOIN task_queue AS dep ON dep.task_id = d.depends_on
                    WHERE d.task_id = t.task_id
              )
              AND (
                    t.queue_key IS NULL
                 OR NOT EXISTS (
                        SELECT 1 FROM task_queue AS other
                        WHERE other.queue_key = t.queue_key
                          AND other.task_id != t.task_id
                          AND other.status = 'in_progress'
                          AND other.locked_at > ?
                    )
              )
            ORDER BY t.available_at ASC
            LIMIT 1
        """
        params = (*params, now.isoformat(), lock_deadline, lock_deadline)
        row = conn.execute(query, params).fetchone()
        if not row:
            conn.execute("COMMIT")
            return None
        task_id = row[0]
        conn.execute(
            """
            UPDATE task_queue
            SET status = ?, locked_at = ?, updated_at = ?
            WHERE task_id = ?
            """,
            (STATUS_IN_PROGRESS, now.isoformat(), now.isoformat(), task_id),
        )
        depends_on = _sqlite_dependencies(conn, task_id)
        conn.execute("COMMIT")
        task = _task_from_row(row, depends_on)
        task.locked_at = now
        return task


def _sqlite_complete_task(database_path: str, task_id: str) -> None:
    with sqlite3.connect(database_path) as conn:
        ensure_queue_tables(conn)
        conn.execute("DELETE FROM task_queue WHERE task_id = ?", (task_id,))
        conn.execute(
            "DELETE FROM task_dependencies WHERE task_id = ? OR depends_on = ?",
            (task_id, task_id),
        )


def _sqlite_fail_task(
    database_path: str,
    task_id: str,
    *,
    error: str,
    retry_delay_seconds: int = 300,
    max_attempts: int = 5,
) -> List[Task]:
    now = _now()
    with sqlite3.connect(database_path) as conn:
        ensure_queue_tables(conn)
        attempts = conn.execute(
            "SELECT attempts FROM task_queue WHERE task_id = ?", (task_id,)
        ).fetchone()
        if attempts is None:
            return []
        attempts = attempts[0] + 1
        status = STATUS_PENDING if attempts < max_attempts else STATUS_FAILED
        available_at = (now + timedelta(seconds=retry_delay_seconds)).isoformat()
        conn.execute(
            """
            UPDATE task_queue
            SET status = ?, attempts = ?, available_at = ?, locked_at = NULL,
                last_error = ?, updated_at = ?
            WHERE task_id = ?
            """,
            (status, attempts, available_at, error[:1024], now.isoformat(), task_id),
        )
        if status != STATUS_FAILED:
            return []
        failed = _sqlite_load_task(conn, task_id)
        return [failed, *_sqlite_fail_dependents(conn, task_id, now=now)]


def _sqlite_cancel_task(database_path: str, task_id: str, *, reason: str) -> List[Task]:
    now = _now()
    with sqlite3.connect(database_path) as conn:
        ensure_queue_tables(conn)
        task = _sqlite_load_task(conn, task_id)
        if task is None:
            return []
        conn.execute(
            """
            UPDATE task_queue
            SET status = ?, locked_at = NULL, last_error = ?, updated_at = ?
            WHERE task_id = ?
            """,
            (STATUS_FAILED, reason[:1024], now.isoformat(), task_id),
        )
        return [task, *_sqlite_fail_dependents(conn, task_id, now=now)]


def _sqlite_fail_dependents(conn: sqlite3.Connection, task_id: str, *, now: datetime) -> List[Task]:
    rows = conn.execute(
        f"""
        WITH RECURSIVE dependents(task_id) AS (
            SELECT task_id FROM task_dependencies WHERE depends_on = ?
            UNION
            SELECT d.task_id FROM task_dependencies AS d
            JOIN dependents ON d.depends_on = dependents.task_id
        )
        SELECT {_TASK_COLUMNS} FROM task_queue
        WHERE task_id IN (SELECT task_id FROM dependents)
          AND status != 'failed'
        ORDER BY created_at ASC
        """,
        (task_id,),
    ).fetchall()
    failed = [_task_from_row(row, _sqlite_dependencies(conn, row[0])) for row in rows]
    conn.executemany(
        """
        UPDATE task_queue
        SET status = ?, locked_at = NULL, last_error = ?, updated_at = ?
        WHERE task_id = ?
        """,
        [
            (STATUS_FAILED, f"dependency {task_id} failed", now.isoformat(), task.task_id)
            for task in failed
        ],
    )
    return failed


def _task_from_redis(task_id: str, data: dict) -> Task:  # pragma: no cover - redis path
    now = _now()
    locked_at = data.get("locked_at")
    return Task(
        task_id=task_id,
        task_type=data["task_type"],
        payload=json.loads(data.get("payload", "{}")),
        attempts=data.get("attempts", 0),
        available_at=datetime.fromisoformat(data.get("available_at", now.isoformat())),
        locked_at=datetime.fromisoformat(locked_at) if locked_at else None,
        last_error=data.get("last_error"),
        queue_key=data.get("queue_key"),
        depends_on=list(data.get("depends_on", [])),
    )


def _redis_get_task(redis_url: str, task_id: str) -> Optional[Task]:  # pragma: no cover - redis path
    raw = _get_redis_client(redis_url).get(_task_key(task_id))
    if not raw:
        return None
    return _task_from_redis(task_id, json.loads(raw))


def _redis_enqueue_task(  # pragma: no cover - requires redis runtime
    redis_url: str,
    task_type: str,
    payload: dict,
    *,
    available_at: Optional[datetime] = None,
    depends_on: Sequence[str] = (),
    queue_key: Optional[str] = None,
) -> str:
    client = _get_redis_client(redis_url)
    task_id = compute_task_id(task_type, payload)
    now = _now()
    available_dt = available_at or now
    payload_json = json.dumps(payload, sort_keys=True)
    task_key = _task_key(task_id)
    ready_key = _ready_key(redis_url)
    delayed_key = _delayed_key(redis_url)
    in_progress_key = _in_progress_key(redis_url)
    dependencies = [dependency for dependency in depends_on if dependency != task_id]

    while True:
        pipe = client.pipeline()
        try:
            pipe.watch(task_key)
            existing_raw = pipe.get(task_key)
            if existing_raw:
                task_data = json.loads(existing_raw)
                status = task_data.get("status", STATUS_PENDING)
                if status in (STATUS_COMPLETED, STATUS_FAILED):
                    task_data["attempts"] = 0
                    task_data["last_error"] = None
                merged = sorted(set(task_data.get("depends_on", [])) | set(dependencies))
                task_data.update(
                    task_type=task_type,
                    payload=payload_json,
                    available_at=available_dt.isoformat(),
                    status=STATUS_PENDING,
                    locked_at=None,
                    last_error=task_data.get("last_error"),
                    queue_key=queue_key,
                    depends_on=merged,
                    updated_at=now.isoformat(),
                )
            else:
                task_data = {
                    "task_id": task_id,
                    "task_type": task_type,
                    "payload": payload_json,
                    "attempts": 0,
                    "available_at": available_dt.isoformat(),
                    "locked_at": None,
                    "status": STATUS_PENDING,
                    "last_error": None,
                    "queue_key": queue_key,
                    "depends_on": sorted(set(dependencies)),
                    "created_at": now.isoformat(),
                    "updated_at": now.isoformat(),
                }
            pipe.multi()
            pipe.set(task_key, json.dumps(task_data, sort_keys=True))
            for dependency in dependencies:
                pipe.sadd(_dependents_key(dependency), task_id)
            pipe.lrem(ready_key, 0, task_id)
            pipe.zrem(delayed_key, task_id)
            pipe.zrem(in_progress_key, task_id)
            if available_dt <= now:
                pipe.rpush(ready_key, task_id)
            else:
                pipe.zadd(delayed_key, {task_id: available_dt.timestamp()})
            pipe.execute()
            break
        except WatchError:  # pragma: no cover - rare contention
            continue
        finally:
            pipe.reset()
    return task_id


def _redis_fetch_and_lock_task(  # pragma: no cover - requires redis runtime
    redis_url: str,
    *,
    task_types: Optional[Sequence[str]] = None,
    lock_timeout_seconds: int = 300,
) -> Optional[Task]:
    client = _get_redis_client(redis_url)
    now = _now()
    _requeue_stale_tasks(client, redis_url, now, lock_timeout_seconds)
    _promote_due_tasks(client, redis_url, now)

    ready_key = _ready_key(redis_url)
    queue_length = client.llen(ready_key)
    if queue_length == 0:
        return None

    for _ in range(queue_length):
        task_id = client.lpop(ready_key)
        if task_id is None:
            return None
        task_key = _task_key(task_id)
        raw = client.get(task_key)
        if not raw:
            continue
        data = json.loads(raw)
        blocked = any(client.exists(_task_key(dep)) for dep in data.get("depends_on", []))
        wrong_type = bool(task_types) and data.get("task_type") not in task_types
        queue_key = data.get("queue_key")
        if not blocked and not wrong_type and queue_key:
            acquired = client.set(
                _queue_lock_key(queue_key), task_id, nx=True, ex=lock_timeout_seconds
            )
            blocked = not acquired
        if blocked or wrong_type:
            data["status"] = STATUS_PENDING
            data["locked_at"] = None
            data["updated_at"] = now.isoformat()
            client.set(task_key, json.dumps(data, sort_keys=True))
            _redis_reschedule_task(client, redis_url, task_id, data, now=now)
            continue
        data["status"] = STATUS_IN_PROGRESS
        data["locked_at"] = now.isoformat()
        data["updated_at"] = now.isoformat()
        pipe = client.pipeline()
        pipe.set(task_key, json.dumps(data, sort_keys=True))
        pipe.zadd(_in_progress_key(redis_url), {task_id: now.timestamp()})
        pipe.execute()
        return _task_from_redis(task_id, data)
    return None


def _promote_due_tasks(client: "redis.Redis", redis_url: str, now: datetime) -> None:  # pragma: no cover - redis path
    delayed_key = _delayed_key(redis_url)
    ready_key = _ready_key(redis_url)
    deadline = now.timestamp()
    while True:
        due = client.zrangebyscore(
            delayed_key, "-inf", deadline, start=0, num=_PROMOTION_BATCH_SIZE
        )
        if not due:
            break
        pipe = client.pipeline()
        pipe.zrem(delayed_key, *due)
        pipe.rpush(ready_key, *due)
        pipe.execute()


def _requeue_stale_tasks(  # pragma: no cover - redis path
    client: "redis.Redis",
    redis_url: str,
    now: datetime,
    lock_timeout_seconds: int,
) -> None:
    in_progress_key = _in_progress_key(redis_url)
    cutoff = now.timestamp() - lock_timeout_seconds
    while True:
        stale = client.zrangebyscore(
            in_progress_key, "-inf", cutoff, start=0, num=_PROMOTION_BATCH_SIZE
        )
        if not stale:
            break
        for task_id in stale:
            task_key = _task_key(task_id)
            raw = client.get(task_key)
            if raw:
                data = json.loads(raw)
                data["status"] = STATUS_PENDING
                data["locked_at"] = None
                data["updated_at"] = now.isoformat()
                client.set(task_key, json.dumps(data, sort_keys=True))
                _release_queue_lock(client, data, task_id)
                _redis_reschedule_task(client, redis_url, task_id, data, now=now)
            client.zrem(in_progress_key, task_id)


def _redis_reschedule_task(  # pragma: no cover - requires redis runtime
    client: "redis.Redis",
    redis_url: str,
    task_id: str,
    data: dict,
    *,
    now: Optional[datetime] = None,
) -> None:
    ready_key = _ready_key(redis_url)
    delayed_key = _delayed_key(redis_url)
    reference = now or _now()
    available_str = data.get("available_at", reference.isoformat())
    try:
        available_at = datetime.fromisoformat(available_str)
    except ValueError:
        available_at = reference
    pipe = client.pipeline()
    pipe.lrem(ready_key, 0, task_id)
    pipe.zrem(delayed_key, task_id)
    if available_at <= reference:
        pipe.rpush(ready_key, task_id)
    else:
        pipe.zadd(delayed_key, {task_id: available_at.timestamp()})
    pipe.execute()


def _release_queue_lock(client: "redis.Redis", data: dict, task_id: str) -> None:  # pragma: no cover - redis path
    queue_key = data.get("queue_key")
    if not queue_key:
        return
    lock_key = _queue_lock_key(queue_key)
    if client.get(lock_key) == task_id:
        client.delete(lock_key)


def _redis_complete_task(redis_url: str, task_id: str) -> None:  # pragma: no cover - requires redis runtime
    client = _get_redis_client(redis_url)
    task_key = _task_key(task_id)
    raw = client.get(task_key)
    if raw:
        _release_queue_lock(client, json.loads(raw), task_id)
    pipe = client.pipeline()
    pipe.delete(task_key)
    pipe.delete(_dependents_key(task_id))
    pipe.lrem(_ready_key(redis_url), 0, task_id)
    pipe.zrem(_delayed_key(redis_url), task_id)
    pipe.zrem(_in_progress_key(redis_url), task_id)
    pipe.execute()


def _redis_fail_task(  # pragma: no cover - requires redis runtime
    redis_url: str,
    task_id: str,
    *,
    error: str,
    retry_delay_seconds: int = 300,
    max_attempts: int = 5,
) -> List[Task]:
    client = _get_redis_client(redis_url)
    task_key = _task_key(task_id)
    raw = client.get(task_key)
    if not raw:
        return []
    now = _now()
    data = json.loads(raw)
    attempts = data.get("attempts", 0) + 1
    data["attempts"] = attempts
    data["last_error"] = error[:1024]
    data["locked_at"] = None
    data["updated_at"] = now.isoformat()
    client.zrem(_in_progress_key(redis_url), task_id)
    _release_queue_lock(client, data, task_id)
    if attempts >= max_attempts:
        data["status"] = STATUS_FAILED
        client.set(task_key, json.dumps(data, sort_keys=True))
        return [_task_from_redis(task_id, data), *_redis_fail_dependents(client, redis_url, task_id, now=now)]
    data["status"] = STATUS_PENDING
    available_at = now + timedelta(seconds=retry_delay_seconds)
    data["available_at"] = available_at.isoformat()
    client.set(task_key, json.dumps(data, sort_keys=True))
    _redis_reschedule_task(client, redis_url, task_id, data, now=now)
    return []


def _redis_cancel_task(redis_url: str, task_id: str, *, reason: str) -> List[Task]:  # pragma: no cover - redis path
    client = _get_redis_client(redis_url)
    task_key = _task_key(task_id)
    raw = client.get(task_key)
    if not raw:
        return []
    now = _now()
    data = json.loads(raw)
    task = _task_from_redis(task_id, data)
    data.update(status=STATUS_FAILED, locked_at=None, last_error=reason[:1024], updated_at=now.isoformat())
    client.set(task_key, json.dumps(data, sort_keys=True))
    _release_queue_lock(client, data, task_id)
    pipe = client.pipeline()
    pipe.lrem(_ready_key(redis_url), 0, task_id)
    pipe.zrem(_delayed_key(redis_url), task_id)
    pipe.zrem(_in_progress_key(redis_url), task_id)
    pipe.execute()
    return [task, *_redis_fail_dependents(client, redis_url, task_id, now=now)]


def _redis_fail_dependents(  # pragma: no cover - redis path
    client: "redis.Redis",
    redis_url: str,
    task_id: str,
    *,
    now: datetime,
) -> List[Task]:
    failed: List[Task] = []
    pending = list(client.smembers(_dependents_key(task_id)))
    seen = {task_id}
    while pending:
        dependent_id = pending.pop(0)
        if dependent_id in seen:
            continue
        seen.add(dependent_id)
        raw = client.get(_task_key(dependent_id))
        if not raw:
            continue
        data = json.loads(raw)
        if data.get("status") == STATUS_FAILED:
            continue
        failed.append(_task_from_redis(dependent_id, data))
        data.update(
            status=STATUS_FAILED,
            locked_at=None,
            last_error=f"dependency {task_id} failed",
            updated_at=now.isoformat(),
        )
        client.set(_task_key(dependent_id), json.dumps(data, sort_keys=True))
        pipe = client.pipeline()
        pipe.lrem(_ready_key(redis_url), 0, dependent_id)
        pipe.zrem(_delayed_key(redis_url), dependent_id)
        pipe.execute()
        pending.extend(client.smembers(_dependents_key(dependent_id)))
    return failed
