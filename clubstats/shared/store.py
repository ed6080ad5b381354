"""
Relational reads/writes for subjects, snapshots, sync state, leaderboard rows and bootcamps

Every function takes an open SQLAlchemy session; transactions belong to the caller.
Timestamps are bound as fixed-width UTC strings so ordering and comparisons
behave the same on PostgreSQL and SQLite.
"""

import json
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import bindparam, text

from clubstats.shared.snapshots import ContributionSnapshot, Provider, SyncState, SyncStatus, parse_utc


_USERNAME_COLUMNS = {
    Provider.GITHUB: "github_username",
    Provider.LEETCODE: "leetcode_username",
}


def db_timestamp(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M:%S.%f+00:00")


def _dumps(value) -> str:
    return json.dumps(value, default=str, sort_keys=True)


def _loads(value):
    if value is None:
        return None
    if isinstance(value, (dict, list)):
        return value
    return json.loads(value)


def username_column(provider) -> str:
    return _USERNAME_COLUMNS[Provider(provider)]


# Subjects

def upsert_subject(
    session,
    subject_id,
    name=None,
    avatar_url=None,
    github_username=None,
    leetcode_username=None,
    experience=0,
    streak=0,
) -> None:
    session.execute(
        text(
            "INSERT INTO subjects (id, name, avatar_url, github_username, leetcode_username, experience, streak) "
            "VALUES (:id, :name, :avatar_url, :github_username, :leetcode_username, :experience, :streak) "
            "ON CONFLICT (id) DO UPDATE SET "
            "name=excluded.name, avatar_url=excluded.avatar_url, "
            "github_username=excluded.github_username, leetcode_username=excluded.leetcode_username, "
            "experience=excluded.experience, streak=excluded.streak"
        ),
        {
            "id": str(subject_id),
            "name": name,
            "avatar_url": avatar_url,
            "github_username": github_username,
            "leetcode_username": leetcode_username,
            "experience": int(experience or 0),
            "streak": int(streak or 0),
        },
    )


_SUBJECT_COLUMNS = "id, name, avatar_url, github_username, leetcode_username, experience, streak"


def get_subject(session, subject_id) -> Optional[Dict[str, Any]]:
    row = session.execute(
        text(f"SELECT {_SUBJECT_COLUMNS} FROM subjects WHERE id=:id"),
        {"id": str(subject_id)},
    ).mappings().fetchone()
    return dict(row) if row else None


def list_subjects(session) -> List[Dict[str, Any]]:
    rows = session.execute(text(f"SELECT {_SUBJECT_COLUMNS} FROM subjects ORDER BY id")).mappings().fetchall()
    return [dict(row) for row in rows]


def list_subjects_with_username(session, provider, after_id=None, limit=500) -> List[Dict[str, Any]]:
    """
    Page through subjects that have a username for provider

    Args:
        session: SQLAlchemy session
        provider (Provider): Provider whose username must be present
        after_id (str): Keyset cursor; only ids greater than this are returned
        limit (int): Page size

    Returns:
        list of subject dicts ordered by id
    """
    column = username_column(provider)
    rows = session.execute(
        text(
            f"SELECT {_SUBJECT_COLUMNS} FROM subjects "
            f"WHERE {column} IS NOT NULL AND {column} <> '' "
            "AND (:after_id IS NULL OR id > :after_id) "
            "ORDER BY id LIMIT :limit"
        ),
        {"after_id": after_id, "limit": int(limit)},
    ).mappings().fetchall()
    return [dict(row) for row in rows]


def list_due_subject_ids(session, provider, stale_before: datetime, after_id=None, limit=500) -> List[str]:
    """
    Subjects with a username whose last successful sync is older than stale_before

    Subjects that were never synced are always due

    Returns:
        list of subject ids ordered by id
    """
    column = username_column(provider)
    rows = session.execute(
        text(
            "SELECT s.id FROM subjects s "
            "LEFT JOIN sync_states st ON st.subject_id = s.id AND st.provider = :provider "
            f"WHERE s.{column} IS NOT NULL AND s.{column} <> '' "
            "AND (st.last_synced_at IS NULL OR st.last_synced_at < :stale_before) "
            "AND (:after_id IS NULL OR s.id > :after_id) "
            "ORDER BY s.id LIMIT :limit"
        ),
        {
            "provider": Provider(provider).value,
            "stale_before": db_timestamp(stale_before),
            "after_id": after_id,
            "limit": int(limit),
        },
    ).fetchall()
    return [str(row[0]) for row in rows]


# Snapshots

def save_snapshot(session, snapshot: ContributionSnapshot) -> None:
    """
    Replace the current snapshot and append it to history

    A non-empty calendar replaces the stored one for the same subject and provider.
    """
    params = {
        "subject_id": snapshot.subject_id,
        "provider": snapshot.provider.value,
        "captured_at": db_timestamp(snapshot.captured_at),
        "payload": _dumps(snapshot.to_dict()),
    }
    session.execute(
        text(
            "INSERT INTO contribution_snapshots (subject_id, provider, captured_at, payload) "
            "VALUES (:subject_id, :provider, :captured_at, :payload) "
            "ON CONFLICT (subject_id, provider) DO UPDATE SET "
            "captured_at=excluded.captured_at, payload=excluded.payload"
        ),
        params,
    )
    session.execute(
        text(
            "INSERT INTO contribution_snapshot_history (id, subject_id, provider, captured_at, payload) "
            "VALUES (:id, :subject_id, :provider, :captured_at, :payload)"
        ),
        {"id": str(uuid.uuid4()), **params},
    )
    if snapshot.calendar:
        session.execute(
            text(
                "INSERT INTO contribution_calendars (subject_id, provider, captured_at, days) "
                "VALUES (:subject_id, :provider, :captured_at, :days) "
                "ON CONFLICT (subject_id, provider) DO UPDATE SET "
                "captured_at=excluded.captured_at, days=excluded.days"
            ),
            {
                "subject_id": params["subject_id"],
                "provider": params["provider"],
                "captured_at": params["captured_at"],
                "days": _dumps(snapshot.calendar),
            },
        )


def get_calendar(session, subject_id, provider) -> Optional[Dict[str, Any]]:
    """
    Latest stored daily calendar for one subject and provider

    Returns:
        dict with captured_at and days, or None when never stored
    """
    row = session.execute(
        text(
            "SELECT captured_at, days FROM contribution_calendars "
            "WHERE subject_id=:subject_id AND provider=:provider"
        ),
        {"subject_id": str(subject_id), "provider": Provider(provider).value},
    ).fetchone()
    if not row:
        return None
    return {"captured_at": parse_utc(row[0]), "days": list(_loads(row[1]) or [])}


def get_current_snapshot(session, subject_id, provider) -> Optional[ContributionSnapshot]:
    row = session.execute(
        text("SELECT payload FROM contribution_snapshots WHERE subject_id=:subject_id AND provider=:provider"),
        {"subject_id": str(subject_id), "provider": Provider(provider).value},
    ).fetchone()
    if not row:
        return None
    return ContributionSnapshot.from_dict(_loads(row[0]))


def get_current_snapshots(session, provider=None) -> Dict[tuple, ContributionSnapshot]:
    if provider is None:
        rows = session.execute(text("SELECT payload FROM contribution_snapshots")).fetchall()
    else:
        rows = session.execute(
            text("SELECT payload FROM contribution_snapshots WHERE provider=:provider"),
            {"provider": Provider(provider).value},
        ).fetchall()

    snapshots = {}
    for row in rows:
        snapshot = ContributionSnapshot.from_dict(_loads(row[0]))
        snapshots[(snapshot.subject_id, snapshot.provider)] = snapshot
    return snapshots


def get_baseline_snapshots(session, provider, window_start: datetime) -> Dict[str, ContributionSnapshot]:
    """
    Per-subject baseline for a window starting at window_start

    The baseline is the latest history row at or before window_start; when a
    subject has none, the earliest row inside the window is used.

    Returns:
        dict subject_id -> ContributionSnapshot
    """
    params = {"provider": Provider(provider).value, "window_start": db_timestamp(window_start)}

    before = session.execute(
        text(
            "SELECT subject_id, payload FROM ("
            " SELECT subject_id, payload,"
            " ROW_NUMBER() OVER (PARTITION BY subject_id ORDER BY captured_at DESC) AS rn"
            " FROM contribution_snapshot_history"
            " WHERE provider=:provider AND captured_at <= :window_start"
            ") ranked WHERE rn = 1"
        ),
        params,
    ).fetchall()
    inside = session.execute(
        text(
            "SELECT subject_id, payload FROM ("
            " SELECT subject_id, payload,"
            " ROW_NUMBER() OVER (PARTITION BY subject_id ORDER BY captured_at ASC) AS rn"
            " FROM contribution_snapshot_history"
            " WHERE provider=:provider AND captured_at > :window_start"
            ") ranked WHERE rn = 1"
        ),
        params,
    ).fetchall()

    baselines = {str(row[0]): ContributionSnapshot.from_dict(_loads(row[1])) for row in inside}
    baselines.update({str(row[0]): ContributionSnapshot.from_dict(_loads(row[1])) for row in before})
    return baselines


# Sync state

def get_sync_state(session, subject_id, provider) -> Optional[SyncState]:
    row = session.execute(
        text(
            "SELECT subject_id, provider, status, last_synced_at, last_sync_ok, next_eligible_at, last_error "
            "FROM sync_states WHERE subject_id=:subject_id AND provider=:provider"
        ),
        {"subject_id": str(subject_id), "provider": Provider(provider).value},
    ).mappings().fetchone()
    if not row:
        return None
    return SyncState(
        subject_id=str(row["subject_id"]),
        provider=Provider(row["provider"]),
        status=SyncStatus(row["status"]),
        last_synced_at=parse_utc(row["last_synced_at"]),
        last_sync_ok=None if row["last_sync_ok"] is None else bool(row["last_sync_ok"]),
        next_eligible_at=parse_utc(row["next_eligible_at"]),
        last_error=row["last_error"],
    )


def save_sync_state(session, state: SyncState) -> None:
    session.execute(
        text(
            "INSERT INTO sync_states "
            "(subject_id, provider, status, last_synced_at, last_sync_ok, next_eligible_at, last_error) "
            "VALUES (:subject_id, :provider, :status, :last_synced_at, :last_sync_ok, :next_eligible_at, :last_error) "
            "ON CONFLICT (subject_id, provider) DO UPDATE SET "
            "status=excluded.status, last_synced_at=excluded.last_synced_at, "
            "last_sync_ok=excluded.last_sync_ok, next_eligible_at=excluded.next_eligible_at, "
            "last_error=excluded.last_error"
        ),
        {
            "subject_id": str(state.subject_id),
            "provider": Provider(state.provider).value,
            "status": SyncStatus(state.status).value,
            "last_synced_at": db_timestamp(state.last_synced_at),
            "last_sync_ok": state.last_sync_ok,
            "next_eligible_at": db_timestamp(state.next_eligible_at),
            "last_error": state.last_error,
        },
    )


# Leaderboard fallback rows

def save_leaderboard_row(session, dimension, period, payload, built_at: datetime) -> None:
    session.execute(
        text(
            "INSERT INTO leaderboard_cache (dimension, period, payload, built_at) "
            "VALUES (:dimension, :period, :payload, :built_at) "
            "ON CONFLICT (dimension, period) DO UPDATE SET "
            "payload=excluded.payload, built_at=excluded.built_at"
        ),
        {"dimension": dimension, "period": period, "payload": _dumps(payload), "built_at": db_timestamp(built_at)},
    )


def get_leaderboard_row(session, dimension, period) -> Optional[Dict[str, Any]]:
    row = session.execute(
        text("SELECT payload, built_at FROM leaderboard_cache WHERE dimension=:dimension AND period=:period"),
        {"dimension": dimension, "period": period},
    ).fetchone()
    if not row:
        return None
    return {"payload": _loads(row[0]), "built_at": parse_utc(row[1])}


# Bootcamps

_BOOTCAMP_COLUMNS = "id, name, type, status, start_date, end_date"


def _bootcamp_from_row(row) -> Dict[str, Any]:
    return {
        "id": str(row["id"]),
        "name": row["name"],
        "type": row["type"],
        "status": row["status"],
        "start_date": parse_utc(row["start_date"]),
        "end_date": parse_utc(row["end_date"]),
    }


def insert_bootcamp(session, bootcamp_id, name, bootcamp_type, status, start_date, end_date) -> None:
    session.execute(
        text(
            f"INSERT INTO bootcamps ({_BOOTCAMP_COLUMNS}) "
            "VALUES (:id, :name, :type, :status, :start_date, :end_date)"
        ),
        {
            "id": str(bootcamp_id),
            "name": name,
            "type": bootcamp_type,
            "status": status,
            "start_date": db_timestamp(start_date),
            "end_date": db_timestamp(end_date),
        },
    )


def get_bootcamp(session, bootcamp_id) -> Optional[Dict[str, Any]]:
    row = session.execute(
        text(f"SELECT {_BOOTCAMP_COLUMNS} FROM bootcamps WHERE id=:id"),
        {"id": str(bootcamp_id)},
    ).mappings().fetchone()
    return _bootcamp_from_row(row) if row else None


def list_bootcamps(session, statuses=None) -> List[Dict[str, Any]]:
    if statuses:
        stmt = text(
            f"SELECT {_BOOTCAMP_COLUMNS} FROM bootcamps WHERE status IN :statuses ORDER BY start_date, id"
        ).bindparams(bindparam("statuses", expanding=True))
        rows = session.execute(stmt, {"statuses": list(statuses)}).mappings().fetchall()
    else:
        rows = session.execute(
            text(f"SELECT {_BOOTCAMP_COLUMNS} FROM bootcamps ORDER BY start_date, id")
        ).mappings().fetchall()
    return [_bootcamp_from_row(row) for row in rows]


def update_bootcamp_status(session, bootcamp_id, status, from_statuses) -> bool:
    """
    Move a bootcamp to status when it is currently in one of from_statuses

    Returns:
        bool whether a row changed
    """
    stmt = text(
        "UPDATE bootcamps SET status=:status WHERE id=:id AND status IN :from_statuses"
    ).bindparams(bindparam("from_statuses", expanding=True))
    result = session.execute(
        stmt,
        {"status": status, "id": str(bootcamp_id), "from_statuses": list(from_statuses)},
    )
    return (result.rowcount or 0) > 0


_PARTICIPANT_COLUMNS = (
    "bootcamp_id, subject_id, registered_at, baseline_stats, current_stats, progress_stats, "
    "final_points, final_rank, last_synced_at"
)


def _participant_from_row(row) -> Dict[str, Any]:
    return {
        "bootcamp_id": str(row["bootcamp_id"]),
        "subject_id": str(row["subject_id"]),
        "registered_at": parse_utc(row["registered_at"]),
        "baseline_stats": _loads(row["baseline_stats"]) or {},
        "current_stats": _loads(row["current_stats"]),
        "progress_stats": _loads(row["progress_stats"]),
        "final_points": int(row["final_points"] or 0),
        "final_rank": None if row["final_rank"] is None else int(row["final_rank"]),
        "last_synced_at": parse_utc(row["last_synced_at"]),
    }


def get_participant(session, bootcamp_id, subject_id) -> Optional[Dict[str, Any]]:
    row = session.execute(
        text(
            f"SELECT {_PARTICIPANT_COLUMNS} FROM bootcamp_participants "
            "WHERE bootcamp_id=:bootcamp_id AND subject_id=:subject_id"
        ),
        {"bootcamp_id": str(bootcamp_id), "subject_id": str(subject_id)},
    ).mappings().fetchone()
    return _participant_from_row(row) if row else None


def insert_participant(session, bootcamp_id, subject_id, registered_at, baseline_stats) -> None:
    session.execute(
        text(
            "INSERT INTO bootcamp_participants "
            "(bootcamp_id, subject_id, registered_at, baseline_stats, current_stats, progress_stats, final_points) "
            "VALUES (:bootcamp_id, :subject_id, :registered_at, :baseline, :baseline, :progress, 0)"
        ),
        {
            "bootcamp_id": str(bootcamp_id),
            "subject_id": str(subject_id),
            "registered_at": db_timestamp(registered_at),
            "baseline": _dumps(baseline_stats),
            "progress": _dumps({}),
        },
    )


def list_participants(session, bootcamp_id) -> List[Dict[str, Any]]:
    rows = session.execute(
        text(
            f"SELECT {_PARTICIPANT_COLUMNS} FROM bootcamp_participants "
            "WHERE bootcamp_id=:bootcamp_id ORDER BY registered_at, subject_id"
        ),
        {"bootcamp_id": str(bootcamp_id)},
    ).mappings().fetchall()
    return [_participant_from_row(row) for row in rows]


def update_participant_progress(session, bootcamp_id, subject_id, current_stats, progress_stats, points, synced_at) -> bool:
    """
    Record a participant's latest progress while the bootcamp is still running

    Rows that already carry a final_rank, or whose bootcamp has left ACTIVE,
    are not touched.

    Returns:
        bool whether the row was updated
    """
    result = session.execute(
        text(
            "UPDATE bootcamp_participants SET "
            "current_stats=:current_stats, progress_stats=:progress_stats, "
            "final_points=:points, last_synced_at=:synced_at "
            "WHERE bootcamp_id=:bootcamp_id AND subject_id=:subject_id AND final_rank IS NULL "
            "AND EXISTS (SELECT 1 FROM bootcamps WHERE bootcamps.id=:bootcamp_id AND bootcamps.status=:active)"
        ),
        {
            "bootcamp_id": str(bootcamp_id),
            "subject_id": str(subject_id),
            "current_stats": _dumps(current_stats),
            "progress_stats": _dumps(progress_stats),
            "points": int(points),
            "synced_at": db_timestamp(synced_at),
            "active": "ACTIVE",
        },
    )
    return (result.rowcount or 0) > 0


def set_final_rank_if_unset(session, bootcamp_id, subject_id, rank) -> bool:
    result = session.execute(
        text(
            "UPDATE bootcamp_participants SET final_rank=:rank "
            "WHERE bootcamp_id=:bootcamp_id AND subject_id=:subject_id AND final_rank IS NULL"
        ),
        {"bootcamp_id": str(bootcamp_id), "subject_id": str(subject_id), "rank": int(rank)},
    )
    return (result.rowcount or 0) > 0


def insert_bootcamp_snapshot(session, bootcamp_id, subject_id, captured_at, stats, points) -> None:
    session.execute(
        text(
            "INSERT INTO bootcamp_snapshots (id, bootcamp_id, subject_id, captured_at, stats, points) "
            "VALUES (:id, :bootcamp_id, :subject_id, :captured_at, :stats, :points)"
        ),
        {
            "id": str(uuid.uuid4()),
            "bootcamp_id": str(bootcamp_id),
            "subject_id": str(subject_id),
            "captured_at": db_timestamp(captured_at),
            "stats": _dumps(stats),
            "points": int(points),
        },
    )


def count_bootcamp_snapshots(session, bootcamp_id, subject_id=None) -> int:
    row = session.execute(
        text(
            "SELECT COUNT(*) FROM bootcamp_snapshots WHERE bootcamp_id=:bootcamp_id "
            "AND (:subject_id IS NULL OR subject_id=:subject_id)"
        ),
        {"bootcamp_id": str(bootcamp_id), "subject_id": None if subject_id is None else str(subject_id)},
    ).fetchone()
    return int(row[0] or 0)


def list_bootcamp_snapshots(session, bootcamp_id, subject_id, limit=50) -> List[Dict[str, Any]]:
    rows = session.execute(
        text(
            "SELECT captured_at, stats, points FROM bootcamp_snapshots "
            "WHERE bootcamp_id=:bootcamp_id AND subject_id=:subject_id "
            "ORDER BY captured_at ASC LIMIT :limit"
        ),
        {"bootcamp_id": str(bootcamp_id), "subject_id": str(subject_id), "limit": int(limit)},
    ).mappings().fetchall()
    return [
        {"captured_at": parse_utc(row["captured_at"]), "stats": _loads(row["stats"]), "points": int(row["points"] or 0)}
        for row in rows
    ]
