"""
Bootcamp progress tracking

Participants are measured against the stats captured when they registered.
Status moves UPCOMING -> ACTIVE -> COMPLETED, or to CANCELLED before completion.
"""

import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from clubstats.shared import store
from clubstats.shared.database import db_session
from clubstats.shared.errors import (
    AlreadyRegistered,
    BaselineFetchFailed,
    BootcampNotFound,
    InvalidTransition,
    MissingUsername,
    NotRegistered,
    RegistrationClosed,
    SubjectNotFound,
)
from clubstats.shared.github_client import GitHubClient
from clubstats.shared.leetcode_client import LeetCodeClient
from clubstats.shared.normalizer import normalize
from clubstats.shared.ranking import LEETCODE_WEIGHTS, snapshot_delta, weighted_points
from clubstats.shared.snapshots import ContributionSnapshot, Provider, to_iso8601_z


logger = logging.getLogger("bootcamps")


class BootcampStatus(str, Enum):
    UPCOMING = "UPCOMING"
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class BootcampType(str, Enum):
    GITHUB = "GITHUB"
    LEETCODE = "LEETCODE"

    @property
    def provider(self) -> Provider:
        return Provider(self.value)


OPEN_STATUSES = (BootcampStatus.UPCOMING.value, BootcampStatus.ACTIVE.value)

# Repository count is not scored in bootcamps
BOOTCAMP_WEIGHTS = {
    BootcampType.GITHUB: {"commits": 1, "pull_requests": 5, "issues": 2},
    BootcampType.LEETCODE: dict(LEETCODE_WEIGHTS),
}

PODIUM_SIZE = 3
PROGRESS_SNAPSHOT_LIMIT = 50


def _utc_now():
    return datetime.now(timezone.utc)


def next_status(status, start_date, end_date, now) -> BootcampStatus:
    """
    Time-driven status for a bootcamp

    Terminal statuses never change here; cancellation and early completion
    are explicit actions.
    """
    status = BootcampStatus(status)
    if status in (BootcampStatus.COMPLETED, BootcampStatus.CANCELLED):
        return status
    if now >= end_date:
        return BootcampStatus.COMPLETED
    if now >= start_date:
        return BootcampStatus.ACTIVE
    return BootcampStatus.UPCOMING


def compute_progress(baseline: ContributionSnapshot, current: ContributionSnapshot) -> ContributionSnapshot:
    """
    Per-field max(0, current - baseline)
    """
    return snapshot_delta(current, baseline)


def progress_points(bootcamp_type, progress) -> int:
    return weighted_points(progress, BOOTCAMP_WEIGHTS[BootcampType(bootcamp_type)])


def progress_stats(bootcamp_type, progress) -> Dict[str, int]:
    """
    The scored fields of progress for bootcamp_type
    """
    return {name: int(getattr(progress, name)) for name in BOOTCAMP_WEIGHTS[BootcampType(bootcamp_type)]}


def final_standings(participants) -> List[Dict[str, Any]]:
    """
    Order participants for final ranking

    Points descending, then registration order, then subject id
    """
    return sorted(
        participants,
        key=lambda p: (-int(p.get("final_points") or 0), p["registered_at"], str(p["subject_id"])),
    )


def bootcamp_summary(bootcamp, participant_count=None) -> Dict[str, Any]:
    summary = {
        "id": bootcamp["id"],
        "name": bootcamp["name"],
        "type": bootcamp["type"],
        "status": bootcamp["status"],
        "start_date": to_iso8601_z(bootcamp["start_date"]),
        "end_date": to_iso8601_z(bootcamp["end_date"]),
    }
    if participant_count is not None:
        summary["participant_count"] = int(participant_count)
    return summary


def _standing_entry(rank, participant, subject, provider) -> Dict[str, Any]:
    subject = subject or {}
    return {
        "rank": rank,
        "subject_id": participant["subject_id"],
        "name": subject.get("name"),
        "username": subject.get(store.username_column(provider)),
        "avatar_url": subject.get("avatar_url"),
        "registered_at": to_iso8601_z(participant["registered_at"]),
        "progress_stats": participant["progress_stats"] or {},
        "points": participant["final_points"],
        "final_rank": participant["final_rank"],
    }


class BootcampTracker:
    def __init__(self, session_factory=db_session, clients=None, now_fn=_utc_now):
        self._session_factory = session_factory
        self._clients = clients or {Provider.GITHUB: GitHubClient(), Provider.LEETCODE: LeetCodeClient()}
        self._now = now_fn

    def _require_bootcamp(self, session, bootcamp_id) -> Dict[str, Any]:
        bootcamp = store.get_bootcamp(session, bootcamp_id)
        if bootcamp is None:
            raise BootcampNotFound(bootcamp_id)
        return bootcamp

    def _fetch_snapshot(self, provider, subject_id, username) -> ContributionSnapshot:
        raw = self._clients[provider].fetch_contributions(username)
        return normalize(provider, raw, subject_id=subject_id, captured_at=self._now())

    def create_bootcamp(self, name, bootcamp_type, start_date, end_date, bootcamp_id=None) -> Dict[str, Any]:
        if end_date <= start_date:
            raise ValueError("end_date must be after start_date")
        bootcamp_type = BootcampType(bootcamp_type)
        bootcamp_id = str(bootcamp_id or uuid.uuid4())
        status = next_status(BootcampStatus.UPCOMING, start_date, end_date, self._now())

        with self._session_factory() as session:
            store.insert_bootcamp(session, bootcamp_id, name, bootcamp_type.value, status.value, start_date, end_date)
            return store.get_bootcamp(session, bootcamp_id)

    def register(self, bootcamp_id, subject_id) -> Dict[str, Any]:
        """
        Register a subject and capture their baseline

        Args:
            bootcamp_id (str): Bootcamp id
            subject_id (str): Subject id

        Returns:
            dict participant row

        Raises:
            BootcampNotFound, SubjectNotFound, RegistrationClosed,
            AlreadyRegistered, MissingUsername, BaselineFetchFailed
        """
        with self._session_factory() as session:
            bootcamp = self._require_bootcamp(session, bootcamp_id)
            subject = store.get_subject(session, subject_id)
            existing = store.get_participant(session, bootcamp_id, subject_id)

        if bootcamp["status"] not in OPEN_STATUSES:
            raise RegistrationClosed(f"Bootcamp {bootcamp_id} is {bootcamp['status']}")
        if subject is None:
            raise SubjectNotFound(subject_id)
        if existing is not None:
            raise AlreadyRegistered(f"Subject {subject_id} is already registered for {bootcamp_id}")

        provider = BootcampType(bootcamp["type"]).provider
        username = subject.get(store.username_column(provider))
        if not username:
            raise MissingUsername(subject_id, provider.value)

        try:
            baseline = self._fetch_snapshot(provider, str(subject["id"]), username)
        except Exception as exc:
            logger.warning(
                "bootcamp baseline fetch failed",
                extra={"bootcamp_id": bootcamp_id, "subject_id": subject_id, "error": type(exc).__name__},
            )
            raise BaselineFetchFailed(subject_id, exc) from exc

        with self._session_factory() as session:
            if store.get_participant(session, bootcamp_id, subject_id) is not None:
                raise AlreadyRegistered(f"Subject {subject_id} is already registered for {bootcamp_id}")
            store.insert_participant(session, bootcamp_id, subject_id, self._now(), baseline.to_dict())
            participant = store.get_participant(session, bootcamp_id, subject_id)

        logger.info("bootcamp registration", extra={"bootcamp_id": bootcamp_id, "subject_id": subject_id})
        return participant

    def _sync_participant(self, bootcamp, participant, subject) -> Optional[int]:
        """
        Fetch and record one participant's progress

        Returns:
            int points, or None when the row is already final
        """
        provider = BootcampType(bootcamp["type"]).provider
        username = (subject or {}).get(store.username_column(provider))
        if not username:
            raise MissingUsername(participant["subject_id"], provider.value)

        baseline = ContributionSnapshot.from_dict(participant["baseline_stats"])
        current = self._fetch_snapshot(provider, participant["subject_id"], username)
        progress = compute_progress(baseline, current)
        points = progress_points(bootcamp["type"], progress)
        synced_at = self._now()

        with self._session_factory() as session:
            updated = store.update_participant_progress(
                session,
                bootcamp["id"],
                participant["subject_id"],
                current.to_dict(),
                progress_stats(bootcamp["type"], progress),
                points,
                synced_at,
            )
            if not updated:
                return None
            store.insert_bootcamp_snapshot(
                session, bootcamp["id"], participant["subject_id"], synced_at, current.to_dict(), points
            )
        return points

    def sync_bootcamp(self, bootcamp_id) -> Dict[str, Any]:
        """
        Refresh progress for every participant of an ACTIVE bootcamp

        Per-participant failures are collected and do not stop the run

        Returns:
            dict with bootcamp_id, name, synced and errors
        """
        with self._session_factory() as session:
            bootcamp = self._require_bootcamp(session, bootcamp_id)
            participants = store.list_participants(session, bootcamp_id)
            subjects = {p["subject_id"]: store.get_subject(session, p["subject_id"]) for p in participants}

        if bootcamp["status"] != BootcampStatus.ACTIVE.value:
            raise InvalidTransition(f"Bootcamp {bootcamp_id} is {bootcamp['status']}, not ACTIVE")

        synced = 0
        errors = []
        for participant in participants:
            subject_id = participant["subject_id"]
            try:
                points = self._sync_participant(bootcamp, participant, subjects.get(subject_id))
            except Exception as exc:
                errors.append({"subject_id": subject_id, "error": str(exc)})
                logger.warning(
                    "bootcamp participant sync failed",
                    extra={"bootcamp_id": bootcamp["id"], "subject_id": subject_id, "error": type(exc).__name__},
                )
                continue
            if points is None:
                logger.info("bootcamp finalized during sync; stopping", extra={"bootcamp_id": bootcamp["id"]})
                break
            synced += 1

        logger.info(
            "bootcamp synced",
            extra={"bootcamp_id": bootcamp["id"], "synced": synced, "failed": len(errors)},
        )
        return {"bootcamp_id": bootcamp["id"], "name": bootcamp["name"], "synced": synced, "errors": errors}

    def complete_bootcamp(self, bootcamp_id) -> Dict[str, Any]:
        """
        Assign final ranks and mark the bootcamp COMPLETED

        Safe to call repeatedly; ranks already set are kept

        Returns:
            dict with bootcamp_id, status, ranked (newly ranked count) and standings
        """
        with self._session_factory() as session:
            bootcamp = self._require_bootcamp(session, bootcamp_id)
            if bootcamp["status"] not in (BootcampStatus.ACTIVE.value, BootcampStatus.COMPLETED.value):
                raise InvalidTransition(f"Bootcamp {bootcamp_id} is {bootcamp['status']}")

            standings = final_standings(store.list_participants(session, bootcamp_id))
            ranked = 0
            for index, participant in enumerate(standings):
                if store.set_final_rank_if_unset(session, bootcamp_id, participant["subject_id"], index + 1):
                    ranked += 1

            store.update_bootcamp_status(
                session, bootcamp_id, BootcampStatus.COMPLETED.value, [BootcampStatus.ACTIVE.value]
            )
            standings = final_standings(store.list_participants(session, bootcamp_id))

        logger.info("bootcamp completed", extra={"bootcamp_id": bootcamp_id, "newly_ranked": ranked})
        return {
            "bootcamp_id": str(bootcamp_id),
            "status": BootcampStatus.COMPLETED.value,
            "ranked": ranked,
            "standings": [
                {
                    "subject_id": p["subject_id"],
                    "final_points": p["final_points"],
                    "final_rank": p["final_rank"],
                }
                for p in standings
            ],
        }

    def cancel_bootcamp(self, bootcamp_id) -> Dict[str, Any]:
        with self._session_factory() as session:
            bootcamp = self._require_bootcamp(session, bootcamp_id)
            changed = store.update_bootcamp_status(
                session, bootcamp_id, BootcampStatus.CANCELLED.value, list(OPEN_STATUSES)
            )
        if not changed and bootcamp["status"] != BootcampStatus.CANCELLED.value:
            raise InvalidTransition(f"Bootcamp {bootcamp_id} is {bootcamp['status']}")
        logger.info("bootcamp cancelled", extra={"bootcamp_id": bootcamp_id})
        return {"bootcamp_id": str(bootcamp_id), "status": BootcampStatus.CANCELLED.value}

    def advance_statuses(self, now: Optional[datetime] = None) -> Dict[str, List[str]]:
        """
        Apply time-driven transitions to every open bootcamp

        Bootcamps that reach their end date are completed, which assigns final ranks

        Returns:
            dict with activated and completed bootcamp ids
        """
        now = now or self._now()
        with self._session_factory() as session:
            bootcamps = store.list_bootcamps(session, statuses=OPEN_STATUSES)

        activated = []
        completed = []
        for bootcamp in bootcamps:
            target = next_status(bootcamp["status"], bootcamp["start_date"], bootcamp["end_date"], now)
            if target.value == bootcamp["status"]:
                continue

            if target == BootcampStatus.COMPLETED:
                if bootcamp["status"] == BootcampStatus.UPCOMING.value:
                    with self._session_factory() as session:
                        store.update_bootcamp_status(
                            session, bootcamp["id"], BootcampStatus.ACTIVE.value, [BootcampStatus.UPCOMING.value]
                        )
                self.complete_bootcamp(bootcamp["id"])
                completed.append(bootcamp["id"])
            else:
                with self._session_factory() as session:
                    store.update_bootcamp_status(session, bootcamp["id"], target.value, [bootcamp["status"]])
                activated.append(bootcamp["id"])

        if activated or completed:
            logger.info("bootcamp statuses advanced", extra={"activated": len(activated), "completed": len(completed)})
        return {"activated": activated, "completed": completed}

    def run_bootcamp_cycle(self, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """
        Advance statuses, then sync every ACTIVE bootcamp

        Returns:
            list of {bootcamp_id, name, synced, errors}
        """
        self.advance_statuses(now)

        with self._session_factory() as session:
            active = store.list_bootcamps(session, statuses=[BootcampStatus.ACTIVE.value])

        results = []
        for bootcamp in active:
            try:
                results.append(self.sync_bootcamp(bootcamp["id"]))
            except Exception as exc:
                logger.exception("bootcamp sync failed", extra={"bootcamp_id": bootcamp["id"]})
                results.append(
                    {"bootcamp_id": bootcamp["id"], "name": bootcamp["name"], "synced": 0,
                     "errors": [{"subject_id": None, "error": str(exc)}]}
                )
        return results

    def leaderboard(self, bootcamp_id) -> Dict[str, Any]:
        """
        Current standings of a bootcamp

        Ordered like final ranking; once completed, ranks are the stored final ranks.

        Returns:
            dict with bootcamp summary and entries
        """
        with self._session_factory() as session:
            bootcamp = self._require_bootcamp(session, bootcamp_id)
            standings = final_standings(store.list_participants(session, bootcamp_id))
            subjects = {p["subject_id"]: store.get_subject(session, p["subject_id"]) for p in standings}

        provider = BootcampType(bootcamp["type"]).provider
        entries = []
        for index, participant in enumerate(standings):
            rank = participant["final_rank"] or index + 1
            entries.append(_standing_entry(rank, participant, subjects.get(participant["subject_id"]), provider))
        return {"bootcamp": bootcamp_summary(bootcamp, len(entries)), "entries": entries}

    def participant_progress(self, bootcamp_id, subject_id) -> Dict[str, Any]:
        """
        One participant's baseline, latest stats and progress history

        Raises:
            BootcampNotFound, NotRegistered
        """
        with self._session_factory() as session:
            bootcamp = self._require_bootcamp(session, bootcamp_id)
            participant = store.get_participant(session, bootcamp_id, subject_id)
            if participant is None:
                raise NotRegistered(bootcamp_id, subject_id)
            snapshots = store.list_bootcamp_snapshots(
                session, bootcamp_id, subject_id, limit=PROGRESS_SNAPSHOT_LIMIT
            )

        return {
            "bootcamp": bootcamp_summary(bootcamp),
            "subject_id": participant["subject_id"],
            "registered_at": to_iso8601_z(participant["registered_at"]),
            "last_synced_at": to_iso8601_z(participant["last_synced_at"]),
            "baseline_stats": participant["baseline_stats"],
            "current_stats": participant["current_stats"],
            "progress_stats": participant["progress_stats"] or {},
            "points": participant["final_points"],
            "final_rank": participant["final_rank"],
            "snapshots": [
                {"captured_at": to_iso8601_z(s["captured_at"]), "points": s["points"]} for s in snapshots
            ],
        }

    def active_bootcamps(self) -> List[Dict[str, Any]]:
        with self._session_factory() as session:
            active = store.list_bootcamps(session, statuses=[BootcampStatus.ACTIVE.value])
            counts = {b["id"]: len(store.list_participants(session, b["id"])) for b in active}
        return [bootcamp_summary(b, counts[b["id"]]) for b in active]

    def history(self) -> List[Dict[str, Any]]:
        """
        Completed bootcamps, latest end date first, each with its podium
        """
        with self._session_factory() as session:
            completed = store.list_bootcamps(session, statuses=[BootcampStatus.COMPLETED.value])
            participants = {b["id"]: store.list_participants(session, b["id"]) for b in completed}
            subject_ids = {p["subject_id"] for rows in participants.values() for p in rows}
            subjects = {subject_id: store.get_subject(session, subject_id) for subject_id in subject_ids}

        results = []
        for bootcamp in sorted(completed, key=lambda b: b["end_date"], reverse=True):
            provider = BootcampType(bootcamp["type"]).provider
            rows = participants[bootcamp["id"]]
            podium = sorted(
                (p for p in rows if p["final_rank"] is not None and p["final_rank"] <= PODIUM_SIZE),
                key=lambda p: p["final_rank"],
            )
            summary = bootcamp_summary(bootcamp, len(rows))
            summary["podium"] = [
                _standing_entry(p["final_rank"], p, subjects.get(p["subject_id"]), provider) for p in podium
            ]
            results.append(summary)
        return results
