# commons/api/dependencies.py
from functools import lru_cache

from fastapi import Depends

from commons.config import settings
from commons.services.ai_agent import ReceiptAnalysisAgent
from commons.services.database_service import DatabaseService
from commons.services.expense_service import ExpenseLifecycleService
from commons.services.minio_client import MinioClient
from commons.services.notifier import EmailNotifier


# Built on first request so importing the app never touches the network.

@lru_cache
def get_database_service() -> DatabaseService:
    return DatabaseService()


@lru_cache
def get_storage() -> MinioClient:
    return MinioClient()


@lru_cache
def get_receipt_analyzer() -> ReceiptAnalysisAgent:
    return ReceiptAnalysisAgent()


@lru_cache
def get_notifier() -> EmailNotifier:
    return EmailNotifier()


class LazyReceiptAnalyzer:
    """Builds the model client only when a receipt actually needs reading"""

    async def analyze_receipt(self, image_url: str):
        return await get_receipt_analyzer().analyze_receipt(image_url)


def get_expense_service(
        db: DatabaseService = Depends(get_database_service),
        storage: MinioClient = Depends(get_storage),
        notifier: EmailNotifier = Depends(get_notifier)
) -> ExpenseLifecycleService:
    return ExpenseLifecycleService(db, storage, LazyReceiptAnalyzer(), notifier, settings)
