"""Shared fixtures: an in-memory dose log store honouring the storage contract."""
from datetime import datetime, timezone
from typing import Any, Dict, List, Tuple

import pytest

from dose_models import DoseLog, InvalidTransition, Medication, NotFoundError
from dose_store import DoseLogStore, slot_key


class InMemoryDoseLogStore(DoseLogStore):
    def __init__(self):
        self.rows: Dict[str, dict] = {}
        self.ensure_calls = 0

    def all_logs(self) -> List[DoseLog]:
        return [DoseLog(**doc) for doc in self.rows.values()]

    async def list_dose_logs(self, medication_id: str, scheduled_date: str) -> List[DoseLog]:
        logs = [
            log for log in self.all_logs()
            if log.medication_id == medication_id and log.scheduled_date == scheduled_date
        ]
        return sorted(logs, key=lambda l: (l.dose_number is None, l.dose_number or 0))

    async def list_history(self, medication_id: str, limit: int) -> List[DoseLog]:
        logs = [log for log in self.all_logs() if log.medication_id == medication_id]
        logs.sort(key=lambda l: l.dose_number or 0)
        logs.sort(key=lambda l: l.scheduled_date, reverse=True)
        return logs[:limit]

    async def list_for_recipient(self, care_recipient_id: str, start_date: str, end_date: str) -> List[DoseLog]:
        return [
            log for log in self.all_logs()
            if log.care_recipient_id == care_recipient_id and start_date <= log.scheduled_date <= end_date
        ]

    async def get_dose_log(self, dose_id: str) -> DoseLog:
        if dose_id not in self.rows:
            raise NotFoundError(f"Dose {dose_id} not found")
        return DoseLog(**self.rows[dose_id])

    async def ensure_dose_log(self, log: DoseLog) -> Tuple[DoseLog, bool]:
        self.ensure_calls += 1
        key = slot_key(log)
        for doc in self.rows.values():
            if doc["generated_by"] == "system" and all(doc[k] == v for k, v in key.items()):
                return DoseLog(**doc), False
        self.rows[log.id] = log.model_dump()
        return log, True

    async def create_dose_log(self, log: DoseLog) -> DoseLog:
        self.rows[log.id] = log.model_dump()
        return log

    async def update_dose_log(
        self,
        dose_id: str,
        fields: Dict[str, Any],
        expected_status: str = "pending"
    ) -> DoseLog:
        doc = self.rows.get(dose_id)
        if doc is None:
            raise NotFoundError(f"Dose {dose_id} not found")
        if doc["status"] != expected_status:
            raise InvalidTransition(dose_id, doc["status"], fields.get("status", expected_status))
        doc.update(fields)
        doc["updated_at"] = datetime.now(timezone.utc).isoformat()
        return DoseLog(**doc)


@pytest.fixture
def store():
    return InMemoryDoseLogStore()


@pytest.fixture
def twice_daily():
    return Medication(
        id="med_m",
        care_recipient_id="cr_1",
        name="Metformin",
        dosage="500mg",
        frequency="twice daily",
        times_of_day=["Morning", "Evening"],
    )


@pytest.fixture
def unscheduled():
    return Medication(
        id="med_n",
        care_recipient_id="cr_1",
        name="Vitamin D",
        dosage="1000 IU",
        frequency="daily",
        times_of_day=[],
    )
