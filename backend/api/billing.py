import sys
from pathlib import Path

# Add backend directory to path for imports to work when running directly
backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import func, or_, and_
from sqlalchemy.orm import Session
from database.connection import get_db
from database.models import Clinic, ClinicStatus, ClinicBilling, BillingStatus, Patient
from api.auth import require_super_admin
from pydantic import BaseModel, Field
from typing import List, Optional
from datetime import datetime, date, timedelta
from decimal import Decimal, ROUND_HALF_UP
import logging

logger = logging.getLogger(__name__)
router = APIRouter(
    prefix="/api/super-admin/billing",
    tags=["Super Admin - Billing"],
    dependencies=[Depends(require_super_admin)]
)

# ==================== CONFIG ====================

PRICE_PER_SLOT = Decimal("34.90")
SLOT_PLAN_TYPE = "per_patient"
DUE_SOON_DAYS = 5
SUSPENSION_GRACE_DAYS = 10
METRICS_WINDOW_DAYS = 365
MIGRATION_MARK = "[SLOT MODEL MIGRATION]"

# ==================== PYDANTIC MODELS ====================

class BillingCreateRequest(BaseModel):
    clinic_id: int
    due_date: date
    notes: Optional[str] = Field(None, max_length=1000)

class PaymentRequest(BaseModel):
    payment_date: Optional[date] = None
    payment_method: str = Field(..., min_length=1, max_length=50)
    notes: Optional[str] = Field(None, max_length=1000)

class DueDateRequest(BaseModel):
    new_due_date: date
    reason: str = Field(..., min_length=3, max_length=500)

# ==================== HELPER FUNCTIONS ====================

def quantize(value) -> Decimal:
    return Decimal(value or 0).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)

def money(value) -> float:
    return float(quantize(value))

def slot_amount(max_patients: int) -> Decimal:
    return quantize(Decimal(max_patients or 0) * PRICE_PER_SLOT)

def percent(part, total) -> float:
    return round(float(part) / float(total) * 100, 2) if total else 0.0

def shift_month(day: date, months: int) -> date:
    """First day of the month `months` away from `day`"""
    index = day.year * 12 + (day.month - 1) + months
    return date(index // 12, index % 12 + 1, 1)

def append_note(current: Optional[str], line: str) -> str:
    return f"{current}\n{line}" if current else line

def alert_status(billing: ClinicBilling, today: date, warning_days: int) -> str:
    if billing.due_date < today - timedelta(days=SUSPENSION_GRACE_DAYS):
        return "suspend_now"
    if billing.due_date < today:
        return "overdue"
    if billing.due_date <= today + timedelta(days=warning_days):
        return "due_soon"
    return "normal"

def serialize_billing(billing: ClinicBilling, today: Optional[date] = None) -> dict:
    today = today or date.today()
    clinic = billing.clinic
    days_overdue = (today - billing.due_date).days if billing.due_date < today else 0
    return {
        "id": billing.id,
        "clinic_id": billing.clinic_id,
        "clinic_name": clinic.name if clinic else None,
        "clinic_status": clinic.status if clinic else None,
        "max_patients": clinic.max_patients if clinic else None,
        "amount": money(billing.amount),
        "due_date": billing.due_date.isoformat(),
        "status": billing.status,
        "plan_type": billing.plan_type,
        "payment_date": billing.payment_date.isoformat() if billing.payment_date else None,
        "payment_method": billing.payment_method,
        "notes": billing.notes,
        "days_overdue": days_overdue if billing.status != BillingStatus.PAID.value else 0,
        "created_at": billing.created_at.isoformat() if billing.created_at else None,
    }

def get_billing_or_404(db: Session, billing_id: int) -> ClinicBilling:
    billing = db.query(ClinicBilling).filter(ClinicBilling.id == billing_id).first()
    if not billing:
        raise HTTPException(status_code=404, detail="Billing not found.")
    return billing

def get_financial_metrics(db: Session, today: Optional[date] = None) -> dict:
    """Revenue, receivables and slot utilization across all tenants"""
    today = today or date.today()

    active_clinics = db.query(Clinic).filter(Clinic.status == ClinicStatus.ACTIVE.value).all()
    total_slots = sum(c.max_patients or 0 for c in active_clinics)
    monthly_revenue = sum((slot_amount(c.max_patients) for c in active_clinics), Decimal("0"))

    active_ids = [c.id for c in active_clinics]
    active_patients = 0
    if active_ids:
        active_patients = db.query(func.count(Patient.id)).filter(Patient.clinic_id.in_(active_ids)).scalar() or 0

    window_start = datetime.now() - timedelta(days=METRICS_WINDOW_DAYS)
    billings = db.query(ClinicBilling).filter(ClinicBilling.created_at >= window_start).all()

    totals = {s.value: Decimal("0") for s in BillingStatus}
    counts = {s.value: 0 for s in BillingStatus}
    last_month_revenue = Decimal("0")
    due_soon_count = 0
    for billing in billings:
        totals[billing.status] += Decimal(billing.amount)
        counts[billing.status] += 1
        if (
            billing.status == BillingStatus.PAID.value
            and billing.payment_date
            and billing.payment_date >= today - timedelta(days=30)
        ):
            last_month_revenue += Decimal(billing.amount)
        if (
            billing.status == BillingStatus.PENDING.value
            and today <= billing.due_date <= today + timedelta(days=DUE_SOON_DAYS)
        ):
            due_soon_count += 1

    billed = counts["pending"] + counts["overdue"] + counts["paid"]
    return {
        "monthly_revenue": money(monthly_revenue),
        "pending_amount": money(totals["pending"]),
        "overdue_amount": money(totals["overdue"]),
        "last_month_revenue": money(last_month_revenue),
        "pending_count": counts["pending"],
        "overdue_count": counts["overdue"],
        "paid_count": counts["paid"],
        "default_rate": percent(counts["overdue"], billed),
        "due_soon_count": due_soon_count,
        "total_contracted_slots": total_slots,
        "total_active_patients": active_patients,
        "utilization_rate": percent(active_patients, total_slots),
        "price_per_slot": float(PRICE_PER_SLOT),
    }

def update_overdue_status(db: Session, today: Optional[date] = None) -> int:
    today = today or date.today()
    late = db.query(ClinicBilling).filter(
        ClinicBilling.status == BillingStatus.PENDING.value,
        ClinicBilling.due_date < today
    ).all()
    for billing in late:
        billing.status = BillingStatus.OVERDUE.value
    db.flush()
    return len(late)

def get_clinics_to_suspend(db: Session, today: Optional[date] = None) -> List[dict]:
    today = today or date.today()
    limit_date = today - timedelta(days=SUSPENSION_GRACE_DAYS)
    rows = db.query(ClinicBilling).join(Clinic).filter(
        ClinicBilling.status == BillingStatus.OVERDUE.value,
        ClinicBilling.due_date < limit_date,
        Clinic.status == ClinicStatus.ACTIVE.value
    ).order_by(ClinicBilling.due_date).all()

    clinics = {}
    for billing in rows:
        entry = clinics.setdefault(billing.clinic_id, {
            "clinic_id": billing.clinic_id,
            "clinic_name": billing.clinic.name,
            "overdue_bills": 0,
            "total_overdue": Decimal("0"),
            "max_days_overdue": 0,
        })
        entry["overdue_bills"] += 1
        entry["total_overdue"] += Decimal(billing.amount)
        entry["max_days_overdue"] = max(entry["max_days_overdue"], (today - billing.due_date).days)

    result = list(clinics.values())
    for entry in result:
        entry["total_overdue"] = money(entry["total_overdue"])
    return result

# ==================== API ENDPOINTS ====================

@router.get("/", response_model=dict)
async def list_billings(
    status: Optional[str] = Query(None, pattern=r"^(pending|overdue|paid)$"),
    clinic_id: Optional[int] = None,
    overdue_only: bool = False,
    due_soon: bool = False,
    db: Session = Depends(get_db)
):
    today = date.today()
    query = db.query(ClinicBilling).join(Clinic)
    if status:
        query = query.filter(ClinicBilling.status == status)
    if clinic_id:
        query = query.filter(ClinicBilling.clinic_id == clinic_id)
    if overdue_only:
        query = query.filter(or_(
            ClinicBilling.status == BillingStatus.OVERDUE.value,
            and_(ClinicBilling.status == BillingStatus.PENDING.value, ClinicBilling.due_date < today)
        ))
    if due_soon:
        query = query.filter(
            ClinicBilling.status == BillingStatus.PENDING.value,
            ClinicBilling.due_date >= today,
            ClinicBilling.due_date <= today + timedelta(days=DUE_SOON_DAYS)
        )

    billings = query.order_by(ClinicBilling.due_date.desc()).all()
    return {"success": True, "data": [serialize_billing(b, today) for b in billings]}

@router.post("/", response_model=dict, status_code=201)
async def create_billing(
    request: BillingCreateRequest,
    db: Session = Depends(get_db)
):
    """Bill a clinic for its contracted slots"""
    clinic = db.query(Clinic).filter(Clinic.id == request.clinic_id).first()
    if not clinic:
        raise HTTPException(status_code=404, detail="Clinic not found.")

    slots = clinic.max_patients or 0
    if slots == 0:
        raise HTTPException(status_code=400, detail="The clinic must have at least 1 contracted slot to be billed.")

    amount = slot_amount(slots)
    billing = ClinicBilling(
        clinic_id=clinic.id,
        amount=amount,
        due_date=request.due_date,
        plan_type=SLOT_PLAN_TYPE,
        notes=request.notes or f"Automatic billing - {slots} slots x {PRICE_PER_SLOT} = {amount}",
    )
    db.add(billing)
    db.commit()
    db.refresh(billing)

    current_patients = db.query(func.count(Patient.id)).filter(Patient.clinic_id == clinic.id).scalar() or 0
    data = serialize_billing(billing)
    data.update({
        "contracted_slots": slots,
        "current_patients": current_patients,
        "price_per_slot": float(PRICE_PER_SLOT),
    })
    logger.info("Billing %s created for clinic %s (%s)", billing.id, clinic.id, amount)
    return {"success": True, "message": "Billing created successfully.", "data": data}

@router.get("/revenue-evolution", response_model=dict)
async def get_revenue_evolution(
    months: int = Query(12, ge=1, le=24),
    db: Session = Depends(get_db)
):
    today = date.today()
    start = shift_month(today, -months)

    series = {}
    for offset in range(months + 1):
        month_start = shift_month(start, offset)
        series[month_start.strftime("%Y-%m")] = {
            "month": month_start.strftime("%Y-%m"),
            "month_label": month_start.strftime("%b/%y"),
            "revenue": Decimal("0"),
            "payments_count": 0,
        }

    paid = db.query(ClinicBilling).filter(
        ClinicBilling.status == BillingStatus.PAID.value,
        ClinicBilling.payment_date >= start
    ).all()
    for billing in paid:
        bucket = series.get(billing.payment_date.strftime("%Y-%m"))
        if bucket:
            bucket["revenue"] += Decimal(billing.amount)
            bucket["payments_count"] += 1

    data = []
    for bucket in series.values():
        bucket["revenue"] = money(bucket["revenue"])
        data.append(bucket)
    return {"success": True, "data": data}

@router.put("/update-overdue", response_model=dict)
async def update_overdue(db: Session = Depends(get_db)):
    updated = update_overdue_status(db)
    db.commit()
    return {
        "success": True,
        "message": f"{updated} billing(s) moved to overdue.",
        "updated_count": updated
    }

@router.get("/alerts", response_model=dict)
async def get_billing_alerts(
    warning_days: int = Query(3, ge=0, le=60),
    db: Session = Depends(get_db)
):
    today = date.today()
    open_bills = db.query(ClinicBilling).filter(
        ClinicBilling.status.in_([BillingStatus.PENDING.value, BillingStatus.OVERDUE.value]),
        ClinicBilling.due_date <= today + timedelta(days=warning_days)
    ).order_by(ClinicBilling.due_date).all()

    alerts = {"suspend_now": [], "overdue": [], "due_soon": []}
    for billing in open_bills:
        kind = alert_status(billing, today, warning_days)
        if kind in alerts:
            data = serialize_billing(billing, today)
            data["alert_status"] = kind
            data["days_until_due"] = max((billing.due_date - today).days, 0)
            alerts[kind].append(data)

    return {
        "success": True,
        "data": {
            "alerts": alerts,
            "summary": {
                "total_alerts": sum(len(v) for v in alerts.values()),
                "suspend_now_count": len(alerts["suspend_now"]),
                "overdue_count": len(alerts["overdue"]),
                "due_soon_count": len(alerts["due_soon"]),
            }
        }
    }

@router.post("/process-overdue", response_model=dict)
async def process_overdue_bills(db: Session = Depends(get_db)):
    """Flag late bills as overdue and list clinics past the suspension grace period"""
    updated = update_overdue_status(db)
    db.commit()
    return {
        "success": True,
        "data": {
            "updated_overdue_bills": updated,
            "clinics_to_suspend": get_clinics_to_suspend(db)
        }
    }

@router.post("/migrate-to-slot-model", response_model=dict)
async def migrate_to_slot_model(db: Session = Depends(get_db)):
    """
    Recalculate every open bill as contracted slots x price per slot.
    Runs as a single transaction: any failure leaves all bills untouched.
    """
    open_bills = db.query(ClinicBilling).join(Clinic).filter(
        ClinicBilling.status.in_([BillingStatus.PENDING.value, BillingStatus.OVERDUE.value]),
        or_(ClinicBilling.notes.is_(None), ~ClinicBilling.notes.contains(MIGRATION_MARK))
    ).order_by(ClinicBilling.id).all()

    total_old = Decimal("0")
    total_new = Decimal("0")
    migrated = []
    try:
        for billing in open_bills:
            old_amount = quantize(billing.amount)
            new_amount = slot_amount(billing.clinic.max_patients)
            billing.amount = new_amount
            billing.plan_type = SLOT_PLAN_TYPE
            billing.notes = append_note(
                billing.notes,
                f"{MIGRATION_MARK} {old_amount} -> {new_amount} "
                f"({billing.clinic.max_patients} slots x {PRICE_PER_SLOT})"
            )
            total_old += old_amount
            total_new += new_amount
            migrated.append({
                "id": billing.id,
                "clinic_id": billing.clinic_id,
                "clinic_name": billing.clinic.name,
                "max_patients": billing.clinic.max_patients,
                "old_amount": money(old_amount),
                "new_amount": money(new_amount),
            })
        db.commit()
    except Exception:
        db.rollback()
        logger.exception("Billing migration rolled back")
        raise HTTPException(status_code=500, detail="Internal server error.")

    difference = total_new - total_old
    logger.info("Billing migration: %s bills updated, difference %s", len(migrated), difference)
    return {
        "success": True,
        "message": f"{len(migrated)} billing(s) migrated to the slot model.",
        "data": {
            "updated_count": len(migrated),
            "total_old_amount": money(total_old),
            "total_new_amount": money(total_new),
            "difference": money(difference),
            "percentage_change": percent(difference, total_old),
            "migrated_billings": migrated,
        }
    }

@router.get("/clinic/{clinic_id}/history", response_model=dict)
async def get_clinic_history(
    clinic_id: int,
    db: Session = Depends(get_db)
):
    billings = db.query(ClinicBilling).filter(
        ClinicBilling.clinic_id == clinic_id
    ).order_by(ClinicBilling.created_at.desc(), ClinicBilling.id.desc()).all()
    return {"success": True, "data": [serialize_billing(b) for b in billings]}

@router.put("/{billing_id}/payment", response_model=dict)
async def record_payment(
    billing_id: int,
    request: PaymentRequest,
    db: Session = Depends(get_db)
):
    billing = get_billing_or_404(db, billing_id)
    if billing.status == BillingStatus.PAID.value:
        raise HTTPException(status_code=400, detail="Billing is already paid.")

    billing.status = BillingStatus.PAID.value
    billing.payment_date = request.payment_date or date.today()
    billing.payment_method = request.payment_method
    if request.notes:
        billing.notes = append_note(billing.notes, request.notes)
    db.commit()
    db.refresh(billing)

    return {"success": True, "message": "Payment recorded successfully.", "data": serialize_billing(billing)}

@router.put("/{billing_id}/due-date", response_model=dict)
async def edit_due_date(
    billing_id: int,
    request: DueDateRequest,
    db: Session = Depends(get_db)
):
    billing = get_billing_or_404(db, billing_id)
    if billing.status == BillingStatus.PAID.value:
        raise HTTPException(status_code=400, detail="Paid billings cannot be changed.")

    old_due_date = billing.due_date
    billing.due_date = request.new_due_date
    billing.notes = append_note(
        billing.notes,
        f"[{datetime.now():%Y-%m-%d %H:%M}] DUE DATE CHANGED: {old_due_date.isoformat()} -> "
        f"{request.new_due_date.isoformat()}. Reason: {request.reason}"
    )
    if billing.status == BillingStatus.OVERDUE.value and request.new_due_date >= date.today():
        billing.status = BillingStatus.PENDING.value
    db.commit()
    db.refresh(billing)

    return {"success": True, "message": "Due date updated.", "data": serialize_billing(billing)}

@router.delete("/{billing_id}", response_model=dict)
async def delete_billing(
    billing_id: int,
    db: Session = Depends(get_db)
):
    billing = get_billing_or_404(db, billing_id)
    db.delete(billing)
    db.commit()
    return {"success": True, "message": "Billing removed."}
