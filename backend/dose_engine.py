"""
Dose generation, check-off and adherence.

``reconcile_doses`` is safe to run any number of times, from any number of
clients: rows are created through the store's ensure-exists operation and
every status change is conditional on the row still being pending.
"""
import logging
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timedelta, timezone, tzinfo
from typing import Dict, Iterable, List, Optional

from dose_models import (
    CHECKOFF_STATUSES,
    DEFAULT_DOSE_LABEL,
    ConflictError,
    DoseLog,
    InvalidTransition,
    Medication,
)
from dose_schedule import DoseSlot, day_has_elapsed, derive_slots
from dose_store import DoseLogStore

logger = logging.getLogger(__name__)

@dataclass
class ReconcileResult:
    scheduled_date: str
    medications: int = 0
    created: int = 0
    already_present: int = 0
    missed: int = 0
    failures: List[dict] = field(default_factory=list)

    def record_failure(self, medication_id: Optional[str], step: str, error: Exception):
        logger.warning(
            "Dose reconciliation %s failed for medication %s on %s: %s",
            step, medication_id, self.scheduled_date, error
        )
        self.failures.append({
            "medication_id": medication_id,
            "step": step,
            "error": str(error)
        })

    def as_dict(self) -> dict:
        return asdict(self)

def parse_iso_to_utc(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.astimezone(timezone.utc)
    except Exception:
        return None

def as_aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value

def dose_has_lapsed(log: DoseLog, now: datetime, tz: tzinfo) -> bool:
    """A pending dose lapses once its slot time passes.

    Doses without a clock time are due by end of day and lapse only when
    their date is fully over in ``tz``.
    """
    scheduled_for = parse_iso_to_utc(log.scheduled_for)
    if scheduled_for:
        return scheduled_for < now
    return day_has_elapsed(date.fromisoformat(log.scheduled_date), now, tz)

def build_pending_dose(medication: Medication, slot: DoseSlot, scheduled_date: str) -> DoseLog:
    scheduled_for = None
    if slot.scheduled_time is not None:
        scheduled_for = slot.scheduled_time.astimezone(timezone.utc).isoformat()
    return DoseLog(
        medication_id=medication.id,
        care_recipient_id=medication.care_recipient_id,
        scheduled_date=scheduled_date,
        dose_number=slot.dose_number,
        dose_label=slot.label,
        status="pending",
        scheduled_for=scheduled_for,
        generated_by="system",
        medication_name=medication.name,
        dosage=medication.dosage
    )

async def _mark_missed(store: DoseLogStore, log: DoseLog, now: datetime, result: ReconcileResult):
    try:
        await store.update_dose_log(
            log.id,
            {"status": "missed", "time_taken": now.isoformat()},
            expected_status="pending"
        )
        result.missed += 1
    except InvalidTransition as e:
        # Resolved elsewhere between our read and write.
        logger.info("Dose %s already %s, not marking missed", log.id, e.current)
    except Exception as e:
        result.record_failure(log.medication_id, "mark_missed", e)

# ==================== RECONCILER ====================

async def reconcile_doses(
    store: DoseLogStore,
    medications: Iterable[Medication],
    today: date,
    now: datetime,
    tz: tzinfo = timezone.utc
) -> ReconcileResult:
    """Ensure today's dose rows exist and mark lapsed pending ones missed."""
    now = as_aware(now)
    scheduled_date = today.isoformat()
    result = ReconcileResult(scheduled_date=scheduled_date)

    for medication in medications:
        if not medication.active:
            continue
        result.medications += 1

        try:
            existing = await store.list_dose_logs(medication.id, scheduled_date)
        except Exception as e:
            result.record_failure(medication.id, "list", e)
            continue

        rows: Dict[str, DoseLog] = {log.id: log for log in existing}
        present = {log.dose_number for log in existing if log.dose_number is not None}

        slots = derive_slots(medication, today, tz)
        if len(slots) == 1 and any(log.generated_by == "manual" for log in existing):
            # A once-a-day dose already logged by hand counts as that day's dose.
            slots = []

        for slot in slots:
            if slot.dose_number in present:
                continue
            try:
                stored, created = await store.ensure_dose_log(
                    build_pending_dose(medication, slot, scheduled_date)
                )
            except Exception as e:
                result.record_failure(medication.id, "create", e)
                continue
            if created:
                result.created += 1
            else:
                result.already_present += 1
            rows[stored.id] = stored
            present.add(slot.dose_number)

        for log in rows.values():
            if log.status == "pending" and dose_has_lapsed(log, now, tz):
                await _mark_missed(store, log, now, result)

    return result

async def close_out_day(
    store: DoseLogStore,
    care_recipient_id: str,
    on_date: date,
    now: datetime,
    tz: tzinfo = timezone.utc
) -> ReconcileResult:
    """Mark every pending dose of a finished day missed. Never creates rows.

    Rows are looked up by care recipient, so doses of a medication that was
    deactivated after they were generated are closed out too.
    """
    now = as_aware(now)
    result = ReconcileResult(scheduled_date=on_date.isoformat())
    if not day_has_elapsed(on_date, now, tz):
        return result

    try:
        logs = await store.list_for_recipient(care_recipient_id, result.scheduled_date, result.scheduled_date)
    except Exception as e:
        result.record_failure(None, "list", e)
        return result

    result.medications = len({log.medication_id for log in logs})
    for log in logs:
        if log.status == "pending":
            await _mark_missed(store, log, now, result)
    return result

async def close_out_recent_days(
    store: DoseLogStore,
    care_recipient_id: str,
    today: date,
    now: datetime,
    tz: tzinfo = timezone.utc,
    look_back_days: int = 1
) -> List[ReconcileResult]:
    """Close out the ``look_back_days`` local dates before ``today``, oldest first."""
    results = []
    for offset in range(max(look_back_days, 0), 0, -1):
        results.append(await close_out_day(store, care_recipient_id, today - timedelta(days=offset), now, tz))
    return results

# ==================== CHECKOFF ====================

async def check_off_dose(
    store: DoseLogStore,
    dose_id: str,
    status: str,
    now: datetime,
    notes: Optional[str] = None
) -> DoseLog:
    """Move a pending dose to taken or skipped.

    Raises InvalidTransition for any other target status or when the dose is
    no longer pending, and NotFoundError for unknown ids.
    """
    status = (status or "").strip().lower()
    if status not in CHECKOFF_STATUSES:
        current = await store.get_dose_log(dose_id)
        raise InvalidTransition(dose_id, current.status, status)

    fields = {"status": status, "time_taken": as_aware(now).isoformat()}
    if notes and notes.strip():
        fields["notes"] = notes.strip()

    try:
        return await store.update_dose_log(dose_id, fields, expected_status="pending")
    except InvalidTransition as e:
        logger.info("Check-off of dose %s as %s rejected: already %s", dose_id, status, e.current)
        raise

async def take_dose(store: DoseLogStore, dose_id: str, now: datetime, notes: Optional[str] = None) -> DoseLog:
    return await check_off_dose(store, dose_id, "taken", now, notes)

async def skip_dose(store: DoseLogStore, dose_id: str, now: datetime, notes: Optional[str] = None) -> DoseLog:
    return await check_off_dose(store, dose_id, "skipped", now, notes)

# ==================== MANUAL LOG ====================

async def log_manual_dose(
    store: DoseLogStore,
    medication: Medication,
    status: str,
    now: datetime,
    tz: tzinfo = timezone.utc,
    notes: Optional[str] = None,
    on_date: Optional[date] = None
) -> DoseLog:
    """Record an ad-hoc taken/skipped dose for a medication without generated slots."""
    status = (status or "").strip().lower()
    if status not in CHECKOFF_STATUSES:
        raise InvalidTransition(None, None, status)

    now = as_aware(now)
    local_today = now.astimezone(tz).date()
    target_day = on_date or local_today
    if target_day > local_today:
        raise ValueError("Cannot log a dose for a future date")
    scheduled_date = target_day.isoformat()

    existing = await store.list_dose_logs(medication.id, scheduled_date)
    if any(log.generated_by == "system" for log in existing):
        raise ConflictError(
            f"Medication {medication.id} has scheduled doses on {scheduled_date}; check those off instead"
        )

    log = DoseLog(
        medication_id=medication.id,
        care_recipient_id=medication.care_recipient_id,
        scheduled_date=scheduled_date,
        dose_number=None,
        dose_label=DEFAULT_DOSE_LABEL,
        status=status,
        time_taken=now.isoformat(),
        notes=(notes.strip() if notes and notes.strip() else None),
        generated_by="manual",
        medication_name=medication.name,
        dosage=medication.dosage
    )
    return await store.create_dose_log(log)

# ==================== READS ====================

async def dose_history(store: DoseLogStore, medication_id: str, limit: int = 30) -> List[DoseLog]:
    limit = max(1, min(limit, 500))
    return await store.list_history(medication_id, limit)

async def summarize_adherence(
    store: DoseLogStore,
    care_recipient_id: str,
    start_date: date,
    end_date: date,
    medications: Iterable[Medication] = ()
) -> dict:
    """Adherence over resolved doses only; pending doses do not count."""
    if end_date < start_date:
        raise ValueError("end_date must not be before start_date")

    logs = await store.list_for_recipient(care_recipient_id, start_date.isoformat(), end_date.isoformat())
    resolved = [log for log in logs if log.status != "pending"]

    by_date = {}
    by_medication = {
        med.id: {"medication_id": med.id, "name": med.name, "total": 0, "taken": 0, "rate": 0}
        for med in medications
    }
    counts = {"taken": 0, "skipped": 0, "missed": 0}

    for log in resolved:
        counts[log.status] += 1
        day = by_date.setdefault(
            log.scheduled_date,
            {"date": log.scheduled_date, "taken": 0, "skipped": 0, "missed": 0, "total": 0}
        )
        day[log.status] += 1
        day["total"] += 1

        med = by_medication.setdefault(
            log.medication_id,
            {"medication_id": log.medication_id, "name": log.medication_name, "total": 0, "taken": 0, "rate": 0}
        )
        med["total"] += 1
        if log.status == "taken":
            med["taken"] += 1

    for med in by_medication.values():
        med["rate"] = round(med["taken"] / med["total"] * 100) if med["total"] else 0

    total = len(resolved)
    return {
        "care_recipient_id": care_recipient_id,
        "start_date": start_date.isoformat(),
        "end_date": end_date.isoformat(),
        "total_doses": total,
        "taken": counts["taken"],
        "skipped": counts["skipped"],
        "missed": counts["missed"],
        "adherence_percent": round(counts["taken"] / total * 100) if total else 0,
        "by_date": sorted(by_date.values(), key=lambda d: d["date"]),
        "by_medication": list(by_medication.values())
    }
