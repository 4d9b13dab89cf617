# commons/api/endpoints.py
import logging
import time
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile
from fastapi.responses import JSONResponse

from commons.api.dependencies import get_database_service, get_expense_service, get_storage
from commons.config import settings
from commons.models.lifecycle import PayoutStatus
from commons.models.schemas import (
    ApproveRequest,
    ExpenseEnvelope,
    ExpenseListEnvelope,
    ExpenseStatisticsEnvelope,
    ExpenseSubmission,
    ImageEnvelope,
    ImageListEnvelope,
    ImageUpdateRequest,
    MemberCreate,
    MemberCreatedEnvelope,
    MemberEnvelope,
    PayoutRequest,
    PublicExpenseSubmission,
    ReceiptSubmissionEnvelope,
    RejectRequest,
)
from commons.security import modification_url
from commons.services.database_service import DatabaseService
from commons.services.expense_service import ExpenseLifecycleService
from commons.services.minio_client import MinioClient

logger = logging.getLogger(__name__)

router = APIRouter()


# Expenses

@router.post("/expenses", response_model=ExpenseEnvelope, status_code=201)
async def submit_expense(
        submission: ExpenseSubmission,
        service: ExpenseLifecycleService = Depends(get_expense_service)
):
    """Self-service submission, authorized by the member's modification key"""
    expense = await service.submit_expense(submission)
    return {"success": True, "expense": expense}


@router.post("/expenses/public", response_model=ExpenseEnvelope, status_code=201)
async def submit_public_expense(
        submission: PublicExpenseSubmission,
        service: ExpenseLifecycleService = Depends(get_expense_service)
):
    expense = await service.submit_public_expense(submission)
    return {"success": True, "expense": expense}


@router.post("/expenses/receipt", response_model=ReceiptSubmissionEnvelope, status_code=201)
async def submit_expense_from_receipt(
        image: UploadFile = File(..., description="Receipt image"),
        service: ExpenseLifecycleService = Depends(get_expense_service)
):
    """Upload a receipt and create an expense from the model's reading of it"""
    # Reading one byte past the limit is enough for ensure_image to refuse it
    expense, analysis = await service.submit_expense_from_receipt(
        await image.read(service.settings.max_upload_bytes + 1),
        image.filename or "receipt",
        image.content_type or "",
    )
    return {"success": True, "expense": expense, "analysis": analysis}


@router.get("/expenses", response_model=ExpenseListEnvelope)
async def list_expenses(
        submitter_id: Optional[int] = Query(None),
        status: Optional[PayoutStatus] = Query(None),
        service: ExpenseLifecycleService = Depends(get_expense_service)
):
    expenses = await service.list_expenses(submitter_id=submitter_id, status=status)
    return {"success": True, "expenses": expenses}


@router.get("/expenses/stats", response_model=ExpenseStatisticsEnvelope)
async def expense_statistics(service: ExpenseLifecycleService = Depends(get_expense_service)):
    stats = await service.expense_statistics()
    return {"success": True, **stats}


@router.get("/expenses/{expense_id}", response_model=ExpenseEnvelope)
async def get_expense(expense_id: int, service: ExpenseLifecycleService = Depends(get_expense_service)):
    return {"success": True, "expense": await service.get_expense(expense_id)}


@router.post("/expenses/{expense_id}/approve", response_model=ExpenseEnvelope)
async def approve_expense(
        expense_id: int,
        body: ApproveRequest,
        service: ExpenseLifecycleService = Depends(get_expense_service)
):
    expense = await service.approve_expense(expense_id, body.approved_by)
    return {"success": True, "expense": expense}


@router.post("/expenses/{expense_id}/reject", response_model=ExpenseEnvelope)
async def reject_expense(
        expense_id: int,
        body: RejectRequest,
        service: ExpenseLifecycleService = Depends(get_expense_service)
):
    expense = await service.reject_expense(expense_id, body.rejected_by, body.reason)
    return {"success": True, "expense": expense}


@router.post("/expenses/{expense_id}/payout", response_model=ExpenseEnvelope)
async def record_payout(
        expense_id: int,
        body: Optional[PayoutRequest] = None,
        service: ExpenseLifecycleService = Depends(get_expense_service)
):
    expense = await service.record_payout(expense_id, body.tx_hash if body else None)
    return {"success": True, "expense": expense}


# Expense images

@router.post("/expenses/{expense_id}/images", response_model=ImageEnvelope, status_code=201)
async def add_expense_image(
        expense_id: int,
        image: UploadFile = File(..., description="Supporting image"),
        description: Optional[str] = Form(None),
        image_type: Optional[str] = Form(None),
        uploaded_by: Optional[str] = Form(None),
        service: ExpenseLifecycleService = Depends(get_expense_service)
):
    created = await service.add_expense_image(
        expense_id,
        await image.read(service.settings.max_upload_bytes + 1),
        image.filename or "image",
        image.content_type or "",
        description=description,
        image_type=image_type,
        uploaded_by=uploaded_by,
    )
    return {"success": True, "image": created}


@router.get("/expenses/{expense_id}/images", response_model=ImageListEnvelope)
async def list_expense_images(expense_id: int, service: ExpenseLifecycleService = Depends(get_expense_service)):
    return {"success": True, "images": await service.list_expense_images(expense_id)}


@router.put("/expense-images/{image_id}", response_model=ImageEnvelope)
async def update_expense_image(
        image_id: int,
        body: ImageUpdateRequest,
        service: ExpenseLifecycleService = Depends(get_expense_service)
):
    image = await service.update_expense_image(image_id, body.description, body.image_type)
    return {"success": True, "image": image}


@router.delete("/expense-images/{image_id}")
async def delete_expense_image(image_id: int, service: ExpenseLifecycleService = Depends(get_expense_service)):
    await service.delete_expense_image(image_id)
    return {"success": True, "message": "Image deleted successfully"}


# Members

@router.post("/members", response_model=MemberCreatedEnvelope, status_code=201)
async def register_member(body: MemberCreate, service: ExpenseLifecycleService = Depends(get_expense_service)):
    """Create a member; the modification key is only ever returned here"""
    member = await service.register_member(body)
    return {
        "success": True,
        "member": member,
        "modification_key": member.modification_key,
        "modification_url": modification_url(settings.base_url, member.modification_key),
    }


@router.get("/members/{modification_key}", response_model=MemberEnvelope)
async def get_member(modification_key: str, service: ExpenseLifecycleService = Depends(get_expense_service)):
    return {"success": True, "member": await service.get_member_by_key(modification_key)}


@router.get("/members/{modification_key}/expenses", response_model=ExpenseListEnvelope)
async def list_member_expenses(
        modification_key: str,
        service: ExpenseLifecycleService = Depends(get_expense_service)
):
    member = await service.get_member_by_key(modification_key)
    return {"success": True, "expenses": await service.list_expenses(submitter_id=member.id)}


@router.get("/health")
async def health_check(
        db: DatabaseService = Depends(get_database_service),
        storage: MinioClient = Depends(get_storage)
):
    """Storage and database health"""
    services_status = {
        "storage": await storage.check_health(),
        "database": await db.check_connection(),
    }

    all_healthy = all(services_status.values())
    status_code = 200 if all_healthy else 503

    return JSONResponse(
        status_code=status_code,
        content={**services_status, "timestamp": time.time()}
    )
