from datetime import date, datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, StrictInt

from commons.models.lifecycle import PayoutStatus
from commons.services.ai_agent import ReceiptAnalysis


class ExpenseFields(BaseModel):
    """Fields shared by every submission channel"""
    title: str
    amount_cents: StrictInt
    payout_address: str
    merchant: Optional[str] = None
    category: Optional[str] = None
    notes: Optional[str] = None
    currency: Optional[str] = "USD"
    expense_date: Optional[date] = None


class ExpenseSubmission(ExpenseFields):
    """Self-service submission by a member holding a modification key"""
    submitted_by: Optional[int] = None
    modification_key: Optional[str] = None


class PublicExpenseSubmission(ExpenseFields):
    """Anonymous submission identified only by name and email"""
    name: str
    email: str


class ApproveRequest(BaseModel):
    approved_by: str


class RejectRequest(BaseModel):
    rejected_by: str
    reason: Optional[str] = None


class PayoutRequest(BaseModel):
    tx_hash: Optional[str] = None


class ImageUpdateRequest(BaseModel):
    description: Optional[str] = None
    image_type: Optional[str] = None


class MemberCreate(BaseModel):
    name: str
    email: str
    bio: Optional[str] = None
    website: Optional[str] = None
    github: Optional[str] = None
    linkedin: Optional[str] = None
    twitter: Optional[str] = None


class ExpenseImageResponse(BaseModel):
    id: int
    expense_id: int
    image_url: str
    description: Optional[str] = None
    image_type: Optional[str] = None
    uploaded_by: Optional[str] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ExpenseResponse(BaseModel):
    id: int
    title: str
    merchant: Optional[str] = None
    category: Optional[str] = None
    notes: Optional[str] = None
    amount_cents: Optional[int] = None
    currency: Optional[str] = None
    expense_date: Optional[date] = None
    receipt_url: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = Field(None, validation_alias="submission_metadata")
    submitted_by: Optional[int] = None
    payout_address: Optional[str] = None
    payout_status: PayoutStatus
    payout_tx_hash: Optional[str] = None
    payout_amount_cents: Optional[int] = None
    payout_date: Optional[datetime] = None
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    rejected_by: Optional[str] = None
    rejected_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    images: List[ExpenseImageResponse] = []

    class Config:
        from_attributes = True


class MemberResponse(BaseModel):
    id: int
    name: str
    email: str
    bio: Optional[str] = None
    website: Optional[str] = None
    github: Optional[str] = None
    linkedin: Optional[str] = None
    twitter: Optional[str] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ExpenseEnvelope(BaseModel):
    success: bool = True
    expense: ExpenseResponse


class ExpenseListEnvelope(BaseModel):
    success: bool = True
    expenses: List[ExpenseResponse]


class ReceiptSubmissionEnvelope(BaseModel):
    success: bool = True
    expense: ExpenseResponse
    analysis: ReceiptAnalysis


class ImageEnvelope(BaseModel):
    success: bool = True
    image: ExpenseImageResponse


class ImageListEnvelope(BaseModel):
    success: bool = True
    images: List[ExpenseImageResponse]


class MemberEnvelope(BaseModel):
    success: bool = True
    member: MemberResponse


class MemberCreatedEnvelope(MemberEnvelope):
    modification_key: str
    modification_url: str


class StatusStatistics(BaseModel):
    payout_status: PayoutStatus
    count: int
    total_amount_cents: int


class ExpenseStatisticsEnvelope(BaseModel):
    success: bool = True
    total_count: int
    total_amount_cents: int
    by_status: List[StatusStatistics]
