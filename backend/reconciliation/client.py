"""
Reconciliation API Client

Async HTTP client for the misfits reconciliation API, for batch callers
and other services. Non-2xx responses are raised as the typed errors in
reconciliation.errors; bulk helpers issue one request per transaction id
and report one outcome per id.
"""

import logging
from decimal import Decimal
from typing import Dict, Any, Iterable, Optional
from urllib.parse import quote

import httpx

from config import get_settings
from reconciliation.errors import StoreUnavailable, error_from_status
from reconciliation.models import (
    FeedQuery,
    FeedPage,
    ResolvedGaps,
    CreateTicketResult,
    BatchResult,
)
from reconciliation.registry import ReconcileAction, BulkAction, ClassifyMode
from reconciliation.services.bulk_service import BulkOperationExecutor

logger = logging.getLogger(__name__)


class ReconciliationClient:
    """
    Client for the misfits reconciliation API.

    Usage:
        async with ReconciliationClient() as client:
            page = await client.fetch_misfits(FeedQuery(filter_type=MisfitFilter.CREDIT))
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        max_concurrency: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        settings = get_settings()
        self.base_url = (base_url or settings.RECONCILIATION_API_URL).rstrip("/")
        self._http = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout if timeout is not None else settings.RECONCILIATION_API_TIMEOUT,
            transport=transport,
            headers={"Content-Type": "application/json"}
        )
        self.executor = BulkOperationExecutor(
            max_concurrency=max_concurrency or settings.BULK_MAX_CONCURRENCY
        )

    async def __aenter__(self) -> "ReconciliationClient":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def close(self):
        await self._http.aclose()

    # ==================== Feed ====================

    async def fetch_misfits(self, query: Optional[FeedQuery] = None) -> FeedPage:
        data = await self._request("GET", "/misfits", params=(query or FeedQuery()).to_params())
        return FeedPage.from_dict(data)

    # ==================== Single-transaction actions ====================

    async def connect_ticket(self, transaction_id: str, ticket_id: str) -> ResolvedGaps:
        data = await self._connect(
            transaction_id, ReconcileAction.CONNECT_TICKET, careTicketId=ticket_id
        )
        return ResolvedGaps.from_dict(data.get("resolved"))

    async def connect_shipment(self, transaction_id: str, shipment_id: str) -> ResolvedGaps:
        data = await self._connect(
            transaction_id, ReconcileAction.CONNECT_SHIPMENT, shipmentId=shipment_id
        )
        return ResolvedGaps.from_dict(data.get("resolved"))

    async def create_ticket(
        self,
        transaction_id: str,
        shipment_id: Optional[str] = None,
        description: Optional[str] = None
    ) -> CreateTicketResult:
        data = await self._connect(
            transaction_id,
            ReconcileAction.CREATE_TICKET,
            shipmentId=shipment_id,
            description=description
        )
        return CreateTicketResult.from_dict(data)

    async def set_brand(
        self,
        transaction_id: str,
        client_id: str,
        confirm_parent: bool = False
    ) -> ResolvedGaps:
        data = await self._connect(
            transaction_id,
            ReconcileAction.SET_BRAND,
            clientId=client_id,
            confirmParent=confirm_parent
        )
        return ResolvedGaps.from_dict(data.get("resolved"))

    async def classify_credit(
        self,
        transaction_id: str,
        mode: ClassifyMode,
        shipping_portion: Optional[Decimal] = None
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {"transactionId": transaction_id, "action": mode.value}
        if shipping_portion is not None:
            body["shippingPortion"] = float(shipping_portion)
        return await self._request("POST", "/misfits/classify-credit", json=body)

    async def link_brand(
        self,
        transaction_id: str,
        client_id: str,
        confirm_parent: bool = False
    ) -> Dict[str, Any]:
        return await self._request(
            "POST",
            f"/transactions/{quote(transaction_id, safe='')}/link",
            json={"clientId": client_id, "confirmParent": confirm_parent}
        )

    async def dispute(self, transaction_id: str, reason: Optional[str] = None) -> Dict[str, Any]:
        body = {"reason": reason} if reason else {}
        return await self._request(
            "POST",
            f"/transactions/{quote(transaction_id, safe='')}/dispute",
            json=body
        )

    # ==================== Bulk ====================

    async def bulk_apply(
        self,
        action: BulkAction,
        transaction_ids: Iterable[str],
        client_id: Optional[str] = None,
        confirm_parent: bool = False,
        reason: Optional[str] = None
    ) -> BatchResult:
        """
        Apply an action to each transaction with one request per id.

        Items succeed or fail independently; retry with result.failed_ids.
        """
        if action == BulkAction.ATTRIBUTE:
            async def operation(transaction_id: str):
                return await self.link_brand(transaction_id, client_id, confirm_parent)
        else:
            async def operation(transaction_id: str):
                return await self.dispute(transaction_id, reason)

        return await self.executor.run(action, transaction_ids, operation)

    # ==================== Private Methods ====================

    async def _connect(self, transaction_id: str, action: ReconcileAction, **params) -> Dict[str, Any]:
        body = {"transactionId": transaction_id, "action": action.value}
        body.update({k: v for k, v in params.items() if v is not None})
        return await self._request("POST", "/misfits/connect", json=body)

    async def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        try:
            response = await self._http.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise StoreUnavailable(f"Reconciliation API timed out: {path}") from e
        except httpx.HTTPError as e:
            raise StoreUnavailable(f"Cannot reach reconciliation API: {str(e)[:100]}") from e

        if response.is_success:
            return response.json() if response.content else {}

        message = self._error_message(response)
        logger.warning(f"{method} {path} failed: HTTP {response.status_code}: {message}")
        raise error_from_status(response.status_code, message)

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text[:200] or f"HTTP {response.status_code}"
        if isinstance(body, dict):
            if body.get("error"):
                return str(body["error"])
            if body.get("detail"):
                return str(body["detail"])
        return f"HTTP {response.status_code}"


