"""
Record storage for dose logs and the medications they are generated from.

``DoseLogStore`` is the contract the engine talks to. ``MongoDoseLogStore``
implements it on Motor; uniqueness of system dose slots is enforced by a
partial unique index so concurrent reconcilers converge on one row per slot.
"""
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from dose_models import DoseLog, InvalidTransition, Medication, NotFoundError

logger = logging.getLogger(__name__)

SLOT_KEY_FIELDS = ("medication_id", "scheduled_date", "dose_number")

def slot_key(log: DoseLog) -> Dict[str, Any]:
    return {field: getattr(log, field) for field in SLOT_KEY_FIELDS}

class DoseLogStore(ABC):
    """Storage contract for dose logs."""

    @abstractmethod
    async def list_dose_logs(self, medication_id: str, scheduled_date: str) -> List[DoseLog]:
        raise NotImplementedError

    @abstractmethod
    async def list_history(self, medication_id: str, limit: int) -> List[DoseLog]:
        raise NotImplementedError

    @abstractmethod
    async def list_for_recipient(
        self,
        care_recipient_id: str,
        start_date: str,
        end_date: str
    ) -> List[DoseLog]:
        raise NotImplementedError

    @abstractmethod
    async def get_dose_log(self, dose_id: str) -> DoseLog:
        raise NotImplementedError

    @abstractmethod
    async def ensure_dose_log(self, log: DoseLog) -> Tuple[DoseLog, bool]:
        """Create ``log`` unless its slot already has a row.

        Returns the stored row and whether this call created it.
        """
        raise NotImplementedError

    @abstractmethod
    async def create_dose_log(self, log: DoseLog) -> DoseLog:
        raise NotImplementedError

    @abstractmethod
    async def update_dose_log(
        self,
        dose_id: str,
        fields: Dict[str, Any],
        expected_status: str = "pending"
    ) -> DoseLog:
        """Apply ``fields`` only while the row is still in ``expected_status``.

        Raises NotFoundError for unknown ids and InvalidTransition when the
        row has already moved on.
        """
        raise NotImplementedError

class MedicationSource(ABC):
    """Read-only access to medications owned by external CRUD screens."""

    @abstractmethod
    async def list_active(self, care_recipient_id: Optional[str] = None) -> List[Medication]:
        raise NotImplementedError

    @abstractmethod
    async def get_medication(self, medication_id: str) -> Medication:
        raise NotImplementedError

# ==================== MONGO ====================

class MongoDoseLogStore(DoseLogStore):
    def __init__(self, db, collection_name: str = "dose_logs"):
        self.collection = db[collection_name]

    async def ensure_indexes(self):
        await self.collection.create_index(
            [(field, ASCENDING) for field in SLOT_KEY_FIELDS],
            unique=True,
            partialFilterExpression={"generated_by": "system"},
            name="uniq_system_dose_slot"
        )
        await self.collection.create_index("id", unique=True, name="uniq_dose_id")
        await self.collection.create_index(
            [("care_recipient_id", ASCENDING), ("scheduled_date", ASCENDING)],
            name="recipient_date"
        )
        await self.collection.create_index(
            [("medication_id", ASCENDING), ("scheduled_date", DESCENDING)],
            name="medication_date"
        )

    async def list_dose_logs(self, medication_id: str, scheduled_date: str) -> List[DoseLog]:
        docs = await self.collection.find(
            {"medication_id": medication_id, "scheduled_date": scheduled_date},
            {"_id": 0}
        ).sort("dose_number", ASCENDING).to_list(100)
        return [DoseLog(**doc) for doc in docs]

    async def list_history(self, medication_id: str, limit: int) -> List[DoseLog]:
        docs = await self.collection.find(
            {"medication_id": medication_id},
            {"_id": 0}
        ).sort([("scheduled_date", DESCENDING), ("dose_number", ASCENDING)]).to_list(limit)
        return [DoseLog(**doc) for doc in docs]

    async def list_for_recipient(
        self,
        care_recipient_id: str,
        start_date: str,
        end_date: str
    ) -> List[DoseLog]:
        docs = await self.collection.find(
            {
                "care_recipient_id": care_recipient_id,
                "scheduled_date": {"$gte": start_date, "$lte": end_date}
            },
            {"_id": 0}
        ).sort([("scheduled_date", ASCENDING), ("dose_number", ASCENDING)]).to_list(5000)
        return [DoseLog(**doc) for doc in docs]

    async def get_dose_log(self, dose_id: str) -> DoseLog:
        doc = await self.collection.find_one({"id": dose_id}, {"_id": 0})
        if not doc:
            raise NotFoundError(f"Dose {dose_id} not found")
        return DoseLog(**doc)

    async def ensure_dose_log(self, log: DoseLog) -> Tuple[DoseLog, bool]:
        doc = log.model_dump()
        try:
            await self.collection.insert_one(doc)
            return log, True
        except DuplicateKeyError:
            existing = await self.collection.find_one(slot_key(log), {"_id": 0})
            if not existing:
                # The conflict was on something other than the slot key.
                raise
            return DoseLog(**existing), False

    async def create_dose_log(self, log: DoseLog) -> DoseLog:
        await self.collection.insert_one(log.model_dump())
        return log

    async def update_dose_log(
        self,
        dose_id: str,
        fields: Dict[str, Any],
        expected_status: str = "pending"
    ) -> DoseLog:
        update_data = {**fields, "updated_at": datetime.now(timezone.utc).isoformat()}
        doc = await self.collection.find_one_and_update(
            {"id": dose_id, "status": expected_status},
            {"$set": update_data},
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER
        )
        if doc:
            return DoseLog(**doc)

        current = await self.collection.find_one({"id": dose_id}, {"_id": 0})
        if not current:
            raise NotFoundError(f"Dose {dose_id} not found")
        raise InvalidTransition(dose_id, current.get("status"), fields.get("status", expected_status))

class MongoMedicationSource(MedicationSource):
    def __init__(self, db, collection_name: str = "medications"):
        self.collection = db[collection_name]

    async def list_active(self, care_recipient_id: Optional[str] = None) -> List[Medication]:
        query = {"active": {"$ne": False}}
        if care_recipient_id:
            query["care_recipient_id"] = care_recipient_id
        docs = await self.collection.find(query, {"_id": 0}).to_list(300)
        meds = []
        for doc in docs:
            try:
                meds.append(Medication(**doc))
            except ValidationError as e:
                logger.warning("Skipping malformed medication %s: %s", doc.get("id"), e)
        return meds

    async def get_medication(self, medication_id: str) -> Medication:
        doc = await self.collection.find_one({"id": medication_id}, {"_id": 0})
        if not doc:
            raise NotFoundError(f"Medication {medication_id} not found")
        return Medication(**doc)
