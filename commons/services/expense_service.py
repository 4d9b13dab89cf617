# commons/services/expense_service.py
"""
Expense lifecycle: intake, review and payout.

Every intake channel (member self-service, public form, admin receipt
upload) creates expenses in ``pending_approval``; admins then approve or
reject them and record payouts. Status changes go through
``commons.models.lifecycle.next_status`` and are written with a conditional
update, so two racing requests cannot both move the same expense.

Validation and authorization happen before anything is written. Upload and
analysis failures abort receipt intake without creating a row. Email is
best-effort and never changes the outcome of an operation.
"""
import io
import logging
import re
from datetime import date
from typing import Any, Dict, List, Optional, Protocol, Tuple

from PIL import Image, UnidentifiedImageError
from sqlalchemy.exc import IntegrityError

from commons.config import Settings, settings as default_settings
from commons.errors import (
    AuthorizationError,
    InvalidAmountError,
    InvalidStateTransition,
    NotFoundError,
    ValidationError,
)
from commons.models.database import MAX_AMOUNT_CENTS, Expense, ExpenseImage, Member, utcnow
from commons.models.lifecycle import INITIAL_STATUS, ExpenseEvent, PayoutStatus, next_status
from commons.models.schemas import ExpenseFields, ExpenseSubmission, MemberCreate, PublicExpenseSubmission
from commons.security import generate_modification_key, is_valid_modification_key, keys_match
from commons.services.ai_agent import ReceiptAnalysis, to_cents
from commons.services.database_service import DatabaseService
from commons.services.notifier import NotificationKind

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
CURRENCY_RE = re.compile(r"^[A-Z]{3}$")
PAYOUT_ADDRESS_LENGTH = 42

RECEIPT_FOLDER = "receipts"
PROOF_FOLDER = "expense-proofs"
DEFAULT_RECEIPT_TITLE = "Receipt"


class Storage(Protocol):
    async def upload(self, data: bytes, file_name: str, mime_type: str, folder: str) -> str: ...


class ReceiptAnalyzer(Protocol):
    async def analyze_receipt(self, image_url: str) -> ReceiptAnalysis: ...


class Notifier(Protocol):
    async def send(self, kind: NotificationKind, recipient: str, data: Dict[str, Any]) -> bool: ...


def clean_optional(value: Optional[str]) -> Optional[str]:
    """Trim; empty strings become None"""
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def column_length(model, name: str) -> int:
    return model.__table__.c[name].type.length


def check_length(value: Optional[str], model, name: str, field: Optional[str] = None) -> Optional[str]:
    """Raise ValidationError when ``value`` would not fit the column"""
    limit = column_length(model, name)
    if value is not None and len(value) > limit:
        field = field or name
        raise ValidationError(f"{field} must be at most {limit} characters", field=field)
    return value


def truncate(value: Optional[str], model, name: str) -> Optional[str]:
    if value is None:
        return None
    return value[:column_length(model, name)]


def normalize_currency(value: Optional[str]) -> str:
    currency = clean_optional(value)
    if currency is None:
        return "USD"
    currency = currency.upper()
    if not CURRENCY_RE.match(currency):
        raise ValidationError("Currency must be a three-letter code", field="currency")
    return currency


def validate_payout_address(value: Optional[str]) -> str:
    """Syntactic check only: 0x prefix and 42 characters"""
    address = clean_optional(value)
    if address is None:
        raise ValidationError("Payout address is required", field="payout_address")
    if not address.startswith("0x") or len(address) != PAYOUT_ADDRESS_LENGTH:
        raise ValidationError("Invalid payout address format. Must be a valid Ethereum address.",
                              field="payout_address")
    return address


def validate_amount_cents(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError("Amount in cents must be an integer", field="amount_cents")
    if value <= 0:
        raise ValidationError("Amount must be greater than 0", field="amount_cents")
    if value > MAX_AMOUNT_CENTS:
        raise ValidationError(f"Amount must be at most {MAX_AMOUNT_CENTS} cents", field="amount_cents")
    return value


def validate_email(value: Optional[str]) -> str:
    email = clean_optional(value)
    if email is None or not EMAIL_RE.match(email):
        raise ValidationError("Invalid email format", field="email")
    return check_length(email, Member, "email")


def validate_expense_fields(fields: ExpenseFields) -> Dict[str, Any]:
    """Shared guard for every submission channel; returns normalized column values"""
    title = clean_optional(fields.title)
    if title is None:
        raise ValidationError("Title is required", field="title")

    return {
        "title": check_length(title, Expense, "title"),
        "amount_cents": validate_amount_cents(fields.amount_cents),
        "payout_address": validate_payout_address(fields.payout_address),
        "merchant": check_length(clean_optional(fields.merchant), Expense, "merchant"),
        "category": check_length(clean_optional(fields.category), Expense, "category"),
        "notes": clean_optional(fields.notes),
        "currency": normalize_currency(fields.currency),
        "expense_date": fields.expense_date,
    }


def ensure_image(data: bytes, mime_type: Optional[str], max_bytes: int) -> None:
    """Reject anything that is not a decodable image"""
    if not mime_type or not mime_type.startswith("image/"):
        raise ValidationError("File must be an image", field="mime_type")
    if not data:
        raise ValidationError("Missing required file data", field="image")
    if len(data) > max_bytes:
        raise ValidationError(f"Image exceeds {max_bytes} bytes", field="image")
    try:
        with Image.open(io.BytesIO(data)) as image:
            image.verify()
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, SyntaxError, ValueError) as e:
        raise ValidationError("File could not be decoded as an image", field="image") from e


def parse_analysis_date(value: Optional[str]) -> Optional[date]:
    value = clean_optional(value)
    if value is None:
        return None
    try:
        return date.fromisoformat(value[:10])
    except ValueError:
        logger.warning(f"Ignoring unreadable receipt date: {value!r}")
        return None


class ExpenseLifecycleService:
    """Owns every write to an expense's payout status"""

    def __init__(
            self,
            db: DatabaseService,
            storage: Storage,
            analyzer: ReceiptAnalyzer,
            notifier: Notifier,
            settings: Optional[Settings] = None
    ):
        self.db = db
        self.storage = storage
        self.analyzer = analyzer
        self.notifier = notifier
        self.settings = settings or default_settings

    # Members

    async def register_member(self, data: MemberCreate) -> Member:
        name = clean_optional(data.name)
        if name is None:
            raise ValidationError("Name is required", field="name")
        check_length(name, Member, "name")
        email = validate_email(data.email)

        if await self.db.get_member_by_email(email) is not None:
            raise ValidationError("A member with this email already exists", field="email")

        try:
            return await self.db.create_member(
                name=name,
                email=email,
                bio=clean_optional(data.bio),
                website=check_length(clean_optional(data.website), Member, "website"),
                github=check_length(clean_optional(data.github), Member, "github"),
                linkedin=check_length(clean_optional(data.linkedin), Member, "linkedin"),
                twitter=check_length(clean_optional(data.twitter), Member, "twitter"),
                modification_key=generate_modification_key(),
            )
        except IntegrityError as e:
            raise ValidationError("A member with this email already exists", field="email") from e

    async def get_member_by_key(self, modification_key: Optional[str]) -> Member:
        if not is_valid_modification_key(modification_key):
            raise AuthorizationError("Invalid modification key format")
        member = await self.db.get_member_by_key(modification_key)
        if member is None:
            raise NotFoundError("Member not found or modification key is invalid")
        return member

    async def _authorize_submitter(self, submission: ExpenseSubmission) -> Member:
        key = clean_optional(submission.modification_key)
        if key is None:
            raise AuthorizationError("Modification key is required")

        if submission.submitted_by is None:
            member = await self.db.get_member_by_key(key)
            if member is None:
                raise AuthorizationError("Modification key does not match any member")
            return member

        member = await self.db.get_member(submission.submitted_by)
        if member is None:
            raise NotFoundError("Submitting member not found", member_id=submission.submitted_by)
        if not keys_match(key, member.modification_key):
            raise AuthorizationError("Modification key does not match the submitting member",
                                     member_id=member.id)
        return member

    # Intake

    async def submit_expense(self, submission: ExpenseSubmission) -> Expense:
        """Self-service submission by a member"""
        values = validate_expense_fields(submission)
        member = await self._authorize_submitter(submission)

        expense = await self.db.create_expense(
            **values,
            submitted_by=member.id,
            payout_status=INITIAL_STATUS,
            submission_metadata={
                "submission_type": "member",
                "submitted_at": utcnow().isoformat(),
                "submitted_by": member.email,
                "submitted_by_name": member.name,
            },
        )
        logger.info(f"Expense {expense.id} submitted by member {member.id}")

        await self._notify_admins(expense, member.name, member.email)
        return expense

    async def submit_public_expense(self, submission: PublicExpenseSubmission) -> Expense:
        """Submission from the public form, identified by name and email only"""
        values = validate_expense_fields(submission)
        name = clean_optional(submission.name)
        if name is None:
            raise ValidationError("Name is required", field="name")
        email = validate_email(submission.email)

        expense = await self.db.create_expense(
            **values,
            submitted_by=None,
            payout_status=INITIAL_STATUS,
            submission_metadata={
                "submission_type": "public",
                "submitted_at": utcnow().isoformat(),
                "submitted_by": email,
                "submitted_by_name": name,
            },
        )
        logger.info(f"Public expense {expense.id} submitted by {email}")

        await self._notify_admins(expense, name, email)
        return expense

    async def submit_expense_from_receipt(
            self,
            image_data: bytes,
            file_name: str,
            mime_type: str
    ) -> Tuple[Expense, ReceiptAnalysis]:
        """Admin intake: upload a receipt, let the model read it, store the guess"""
        ensure_image(image_data, mime_type, self.settings.max_upload_bytes)

        receipt_url = await self.storage.upload(image_data, file_name, mime_type, RECEIPT_FOLDER)
        analysis = await self.analyzer.analyze_receipt(receipt_url)

        amount_cents = to_cents(analysis.amount)
        if amount_cents is not None and amount_cents <= 0:
            logger.warning(f"Ignoring non-positive analyzed amount: {analysis.amount}")
            amount_cents = None

        currency = clean_optional(analysis.currency)
        currency = currency.upper() if currency and CURRENCY_RE.match(currency.upper()) else "USD"

        snapshot = analysis.model_dump(exclude_none=True)
        snapshot.update(submission_type="receipt", analysis_timestamp=utcnow().isoformat())

        expense = await self.db.create_expense(
            title=truncate(clean_optional(analysis.title), Expense, "title") or DEFAULT_RECEIPT_TITLE,
            merchant=truncate(clean_optional(analysis.merchant), Expense, "merchant"),
            category=truncate(clean_optional(analysis.category), Expense, "category"),
            amount_cents=amount_cents,
            currency=currency,
            expense_date=parse_analysis_date(analysis.date),
            notes=clean_optional(analysis.notes),
            receipt_url=receipt_url,
            submission_metadata=snapshot,
            payout_status=INITIAL_STATUS,
        )
        logger.info(f"Expense {expense.id} created from receipt {file_name}")
        return expense, analysis

    # Review and payout

    async def get_expense(self, expense_id: int) -> Expense:
        expense = await self.db.get_expense(expense_id)
        if expense is None:
            raise NotFoundError("Expense not found", expense_id=expense_id)
        return expense

    async def _transition(self, expense: Expense, event: ExpenseEvent, values: Dict[str, Any]) -> Expense:
        """Apply ``event`` with a compare-and-swap on the current status"""
        target = next_status(expense.payout_status, event)
        applied = await self.db.transition_expense(
            expense.id, expense.payout_status, dict(values, payout_status=target)
        )
        if not applied:
            current = await self.db.get_expense(expense.id)
            if current is None:
                raise NotFoundError("Expense not found", expense_id=expense.id)
            raise InvalidStateTransition(PayoutStatus(current.payout_status).value, event.value, expense.id)

        return await self.get_expense(expense.id)

    async def approve_expense(self, expense_id: int, approved_by: str) -> Expense:
        approver = clean_optional(approved_by)
        if approver is None:
            raise ValidationError("Approver identity is required", field="approved_by")
        check_length(approver, Expense, "approved_by")

        expense = await self.get_expense(expense_id)
        try:
            expense = await self._transition(expense, ExpenseEvent.APPROVE, {
                "approved_by": approver,
                "approved_at": utcnow(),
            })
        except InvalidStateTransition as e:
            logger.warning(f"Approve rejected for expense {expense_id}: {e.message}")
            raise

        logger.info(f"Expense {expense_id} approved by {approver}")
        await self._notify_submitter(NotificationKind.EXPENSE_APPROVED, expense)
        return expense

    async def reject_expense(self, expense_id: int, rejected_by: str, reason: Optional[str] = None) -> Expense:
        rejector = clean_optional(rejected_by)
        if rejector is None:
            raise ValidationError("Rejector identity is required", field="rejected_by")
        check_length(rejector, Expense, "rejected_by")

        expense = await self.get_expense(expense_id)
        try:
            expense = await self._transition(expense, ExpenseEvent.REJECT, {
                "rejected_by": rejector,
                "rejected_at": utcnow(),
                "rejection_reason": clean_optional(reason),
            })
        except InvalidStateTransition as e:
            logger.warning(f"Reject refused for expense {expense_id}: {e.message}")
            raise

        logger.info(f"Expense {expense_id} rejected by {rejector}")
        await self._notify_submitter(NotificationKind.EXPENSE_REJECTED, expense,
                                     rejection_reason=expense.rejection_reason)
        return expense

    async def record_payout(self, expense_id: int, tx_hash: Optional[str] = None) -> Expense:
        tx_hash = check_length(clean_optional(tx_hash), Expense, "payout_tx_hash", field="tx_hash")
        expense = await self.get_expense(expense_id)

        # Status is checked before the amount so a completed expense reports its state.
        next_status(expense.payout_status, ExpenseEvent.PAYOUT)
        if not expense.amount_cents or expense.amount_cents <= 0:
            raise InvalidAmountError("Invalid expense amount", expense_id=expense_id,
                                     amount_cents=expense.amount_cents)

        expense = await self._transition(expense, ExpenseEvent.PAYOUT, {
            "payout_tx_hash": tx_hash,
            "payout_amount_cents": expense.amount_cents,
            "payout_date": utcnow(),
        })

        logger.info(f"Payout recorded for expense {expense_id}, tx: {expense.payout_tx_hash}")
        await self._notify_submitter(NotificationKind.EXPENSE_PAID, expense, tx_hash=expense.payout_tx_hash)
        return expense

    # Queries

    async def list_expenses(
            self,
            submitter_id: Optional[int] = None,
            status: Optional[PayoutStatus] = None
    ) -> List[Expense]:
        return await self.db.list_expenses(submitter_id=submitter_id, status=status)

    async def expense_statistics(self) -> Dict[str, Any]:
        rows = await self.db.get_expense_statistics()
        by_status = [
            {
                "payout_status": PayoutStatus(row["payout_status"]),
                "count": int(row["count"]),
                "total_amount_cents": int(row["total_amount_cents"] or 0),
            }
            for row in rows
        ]
        return {
            "total_count": sum(row["count"] for row in by_status),
            "total_amount_cents": sum(row["total_amount_cents"] for row in by_status),
            "by_status": by_status,
        }

    # Images

    async def add_expense_image(
            self,
            expense_id: int,
            image_data: bytes,
            file_name: str,
            mime_type: str,
            description: Optional[str] = None,
            image_type: Optional[str] = None,
            uploaded_by: Optional[str] = None
    ) -> ExpenseImage:
        ensure_image(image_data, mime_type, self.settings.max_upload_bytes)
        image_type = check_length(clean_optional(image_type), ExpenseImage, "image_type") or "proof"
        uploaded_by = check_length(clean_optional(uploaded_by), ExpenseImage, "uploaded_by")
        await self.get_expense(expense_id)

        image_url = await self.storage.upload(image_data, file_name, mime_type, PROOF_FOLDER)
        return await self.db.create_expense_image(
            expense_id=expense_id,
            image_url=image_url,
            description=clean_optional(description),
            image_type=image_type,
            uploaded_by=uploaded_by,
        )

    async def list_expense_images(self, expense_id: int) -> List[ExpenseImage]:
        await self.get_expense(expense_id)
        return await self.db.list_expense_images(expense_id)

    async def update_expense_image(
            self,
            image_id: int,
            description: Optional[str] = None,
            image_type: Optional[str] = None
    ) -> ExpenseImage:
        image = await self.db.update_expense_image(image_id, {
            "description": clean_optional(description),
            "image_type": check_length(clean_optional(image_type), ExpenseImage, "image_type") or "proof",
        })
        if image is None:
            raise NotFoundError("Image not found", image_id=image_id)
        return image

    async def delete_expense_image(self, image_id: int) -> None:
        if not await self.db.delete_expense_image(image_id):
            raise NotFoundError("Image not found", image_id=image_id)

    # Notifications

    @staticmethod
    def _message_data(expense: Expense, name: Optional[str], email: Optional[str], **extra) -> Dict[str, Any]:
        data = {
            "submitter_name": name,
            "submitter_email": email,
            "expense_id": expense.id,
            "expense_title": expense.title,
            "amount_cents": expense.amount_cents,
            "currency": expense.currency,
        }
        data.update(extra)
        return data

    async def _notify_admins(self, expense: Expense, name: str, email: str):
        data = self._message_data(expense, name, email)
        for admin_email in self.settings.admin_emails:
            await self._send(NotificationKind.EXPENSE_SUBMITTED, admin_email, data)

    async def _resolve_submitter(self, expense: Expense) -> Tuple[Optional[str], Optional[str]]:
        if expense.submitted_by is not None:
            member = await self.db.get_member(expense.submitted_by)
            if member is not None:
                return member.name, member.email
        metadata = expense.submission_metadata or {}
        return metadata.get("submitted_by_name"), metadata.get("submitted_by")

    async def _notify_submitter(self, kind: NotificationKind, expense: Expense, **extra):
        try:
            name, email = await self._resolve_submitter(expense)
        except Exception as e:
            logger.error(f"Could not resolve submitter of expense {expense.id}: {e}")
            return
        if not email:
            logger.info(f"No submitter email for expense {expense.id}, skipping {kind.value} notification")
            return
        await self._send(kind, email, self._message_data(expense, name, email, **extra))

    async def _send(self, kind: NotificationKind, recipient: str, data: Dict[str, Any]):
        try:
            sent = await self.notifier.send(kind, recipient, data)
        except Exception as e:
            logger.error(f"Notifier raised for {kind.value} to {recipient}: {e}")
            return
        if not sent:
            logger.warning(f"Notification {kind.value} to {recipient} was not delivered")
