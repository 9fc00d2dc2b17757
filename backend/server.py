from fastapi import FastAPI, APIRouter, HTTPException, Depends
from dotenv import load_dotenv
from starlette.middleware.cors import CORSMiddleware
from motor.motor_asyncio import AsyncIOMotorClient
import os
import logging
from pathlib import Path
from typing import List, Optional, Dict
from datetime import datetime, timezone, timedelta, date, tzinfo
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dose_models import (
    ConflictError,
    DoseCheckoff,
    InvalidTransition,
    ManualDoseCreate,
    Medication,
    NotFoundError,
)
from dose_store import MongoDoseLogStore, MongoMedicationSource
from dose_engine import (
    check_off_dose,
    close_out_day,
    close_out_recent_days,
    dose_history,
    log_manual_dose,
    reconcile_doses,
    summarize_adherence,
)

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

CARE_TIMEZONE = os.environ.get("CARE_TIMEZONE", "UTC")
DOSE_HISTORY_LIMIT = int(os.environ.get("DOSE_HISTORY_LIMIT", "30"))
CLOSE_OUT_LOOK_BACK_DAYS = int(os.environ.get("CLOSE_OUT_LOOK_BACK_DAYS", "2"))
ADHERENCE_DEFAULT_DAYS = 7

# MongoDB connection
mongo_url = os.environ['MONGO_URL']
client = AsyncIOMotorClient(mongo_url)
db = client[os.environ['DB_NAME']]

dose_store = MongoDoseLogStore(db)
medication_source = MongoMedicationSource(db)

# Create the main app without a prefix
app = FastAPI()

# Create a router with the /api prefix
api_router = APIRouter(prefix="/api")

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# ==================== HELPERS ====================

def get_dose_store() -> MongoDoseLogStore:
    return dose_store

def get_medication_source() -> MongoMedicationSource:
    return medication_source

def utc_now() -> datetime:
    return datetime.now(timezone.utc)

def load_timezone(name: Optional[str]) -> tzinfo:
    """Resolve an IANA zone name, falling back to CARE_TIMEZONE and then UTC."""
    for candidate in (name, CARE_TIMEZONE):
        if not candidate:
            continue
        try:
            return ZoneInfo(candidate)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning("Unknown time zone %r, falling back", candidate)
    return timezone.utc

async def resolve_care_timezone(care_recipient_id: Optional[str]) -> tzinfo:
    if not care_recipient_id:
        return load_timezone(None)
    recipient = await db.care_recipients.find_one(
        {"id": care_recipient_id},
        {"_id": 0, "timezone": 1}
    )
    return load_timezone((recipient or {}).get("timezone"))

def parse_yyyy_mm_dd(value: Optional[str]) -> Optional[date]:
    if not value:
        return None
    try:
        return datetime.strptime(value.strip(), "%Y-%m-%d").date()
    except Exception:
        return None

def require_date(value: Optional[str], field_name: str) -> Optional[date]:
    if not value:
        return None
    parsed = parse_yyyy_mm_dd(value)
    if not parsed:
        raise HTTPException(status_code=400, detail=f"{field_name} must use YYYY-MM-DD")
    return parsed

def group_by_recipient(medications: List[Medication]) -> Dict[str, List[Medication]]:
    grouped: Dict[str, List[Medication]] = {}
    for med in medications:
        grouped.setdefault(med.care_recipient_id, []).append(med)
    return grouped

async def run_reconciliation(
    store: MongoDoseLogStore,
    source: MongoMedicationSource,
    care_recipient_id: Optional[str] = None
) -> List[dict]:
    """Reconcile today's doses, one pass per care recipient in their own time zone.

    Each pass also closes out the previous CLOSE_OUT_LOOK_BACK_DAYS local
    dates, so doses left pending when a day ended become missed.
    """
    now = utc_now()
    meds = await source.list_active(care_recipient_id)
    grouped = group_by_recipient(meds)
    if care_recipient_id:
        grouped.setdefault(care_recipient_id, [])
    results = []
    for recipient_id, recipient_meds in grouped.items():
        tz = await resolve_care_timezone(recipient_id)
        today = now.astimezone(tz).date()
        for closed in await close_out_recent_days(
            store, recipient_id, today, now, tz, look_back_days=CLOSE_OUT_LOOK_BACK_DAYS
        ):
            if closed.missed or closed.failures:
                logger.info(
                    "Closed out %s for %s: missed=%d failures=%d",
                    closed.scheduled_date, recipient_id, closed.missed, len(closed.failures)
                )
        result = await reconcile_doses(store, recipient_meds, today, now, tz)
        logger.info(
            "Reconciled doses for %s on %s: created=%d present=%d missed=%d failures=%d",
            recipient_id, result.scheduled_date, result.created,
            result.already_present, result.missed, len(result.failures)
        )
        results.append({"care_recipient_id": recipient_id, **result.as_dict()})
    return results

# ==================== DOSES ====================

@api_router.post("/doses/reconcile", response_model=dict)
async def reconcile_todays_doses(
    care_recipient_id: Optional[str] = None,
    store: MongoDoseLogStore = Depends(get_dose_store),
    source: MongoMedicationSource = Depends(get_medication_source)
):
    results = await run_reconciliation(store, source, care_recipient_id)
    return {"results": results}

@api_router.get("/doses/today", response_model=dict)
async def get_todays_doses(
    care_recipient_id: str,
    store: MongoDoseLogStore = Depends(get_dose_store),
    source: MongoMedicationSource = Depends(get_medication_source)
):
    results = await run_reconciliation(store, source, care_recipient_id)
    tz = await resolve_care_timezone(care_recipient_id)
    today = utc_now().astimezone(tz).date().isoformat()

    meds = await source.list_active(care_recipient_id)
    items = []
    for med in sorted(meds, key=lambda m: (m.name or "").lower()):
        logs = await store.list_dose_logs(med.id, today)
        items.append({
            "medication": med.model_dump(),
            "doses": [log.model_dump() for log in logs]
        })
    return {
        "scheduled_date": today,
        "reconcile": results[0] if results else None,
        "medications": items
    }

@api_router.post("/doses/{dose_id}/take", response_model=dict)
async def take_dose_route(
    dose_id: str,
    body: DoseCheckoff,
    store: MongoDoseLogStore = Depends(get_dose_store)
):
    return await apply_checkoff(store, dose_id, "taken", body.notes)

@api_router.post("/doses/{dose_id}/skip", response_model=dict)
async def skip_dose_route(
    dose_id: str,
    body: DoseCheckoff,
    store: MongoDoseLogStore = Depends(get_dose_store)
):
    return await apply_checkoff(store, dose_id, "skipped", body.notes)

async def apply_checkoff(store: MongoDoseLogStore, dose_id: str, status: str, notes: Optional[str]) -> dict:
    try:
        log = await check_off_dose(store, dose_id, status, utc_now(), notes)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Dose not found")
    except InvalidTransition as e:
        raise HTTPException(status_code=409, detail=f"Dose is already {e.current}")
    return log.model_dump()

@api_router.post("/doses/close-out", response_model=dict)
async def close_out_doses(
    on_date: str,
    care_recipient_id: Optional[str] = None,
    store: MongoDoseLogStore = Depends(get_dose_store),
    source: MongoMedicationSource = Depends(get_medication_source)
):
    target_day = require_date(on_date, "on_date")
    now = utc_now()
    if care_recipient_id:
        recipient_ids = [care_recipient_id]
    else:
        recipient_ids = list(group_by_recipient(await source.list_active()))
    results = []
    for recipient_id in recipient_ids:
        tz = await resolve_care_timezone(recipient_id)
        result = await close_out_day(store, recipient_id, target_day, now, tz)
        if result.missed:
            logger.info("Closed out %s for %s: missed=%d", result.scheduled_date, recipient_id, result.missed)
        results.append({"care_recipient_id": recipient_id, **result.as_dict()})
    return {"results": results}

@api_router.get("/doses/adherence", response_model=dict)
async def dose_adherence(
    care_recipient_id: str,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    store: MongoDoseLogStore = Depends(get_dose_store),
    source: MongoMedicationSource = Depends(get_medication_source)
):
    tz = await resolve_care_timezone(care_recipient_id)
    end_day = require_date(end_date, "end_date") or utc_now().astimezone(tz).date()
    start_day = require_date(start_date, "start_date") or end_day - timedelta(days=ADHERENCE_DEFAULT_DAYS - 1)
    meds = await source.list_active(care_recipient_id)
    try:
        return await summarize_adherence(store, care_recipient_id, start_day, end_day, meds)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

# ==================== MEDICATION DOSES ====================

@api_router.post("/medications/{medication_id}/doses/manual", response_model=dict)
async def create_manual_dose(
    medication_id: str,
    body: ManualDoseCreate,
    on_date: Optional[str] = None,
    store: MongoDoseLogStore = Depends(get_dose_store),
    source: MongoMedicationSource = Depends(get_medication_source)
):
    try:
        medication = await source.get_medication(medication_id)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Medication not found")

    tz = await resolve_care_timezone(medication.care_recipient_id)
    try:
        log = await log_manual_dose(
            store,
            medication,
            body.status,
            utc_now(),
            tz,
            notes=body.notes,
            on_date=require_date(on_date, "on_date")
        )
    except InvalidTransition:
        raise HTTPException(status_code=400, detail="Status must be 'taken' or 'skipped'")
    except ConflictError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return log.model_dump()

@api_router.get("/medications/{medication_id}/doses/history", response_model=List[dict])
async def medication_dose_history(
    medication_id: str,
    limit: int = DOSE_HISTORY_LIMIT,
    store: MongoDoseLogStore = Depends(get_dose_store)
):
    logs = await dose_history(store, medication_id, limit)
    return [log.model_dump() for log in logs]

@api_router.get("/")
async def root():
    return {"message": "CareSync Dose API"}

# Include the router in the main app
app.include_router(api_router)

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=os.environ.get('CORS_ORIGINS', '*').split(','),
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.on_event("startup")
async def ensure_dose_indexes():
    await dose_store.ensure_indexes()

@app.on_event("shutdown")
async def shutdown_db_client():
    client.close()
