"""Interfaces to the collaborators the engine relies on but does not own.

User lookups, payment request storage and payment release live in other
services. The in-memory implementations here back tests, the CLI and local
development.
"""

from __future__ import annotations

import logging
import uuid
from typing import Dict, Iterable, List, Optional, Protocol

from pydantic import BaseModel

from .contracts import Identity, PaymentData, PaymentRequest

logger = logging.getLogger(__name__)


class PaymentResult(BaseModel):
    success: bool
    transaction_id: Optional[str] = None
    error: Optional[str] = None


class UserDirectory(Protocol):
    async def get_user(self, user_id: str) -> Identity | None:
        """Return the identity for ``user_id`` or ``None``."""


class PaymentRequestStore(Protocol):
    async def get_payment_request(self, request_id: str) -> PaymentRequest | None:
        """Return the payment request or ``None``."""

    async def update_payment_request(self, request_id: str, **changes) -> None:
        """Mirror workflow progress onto the payment request."""


class PaymentGateway(Protocol):
    async def release(
        self, payment_request: PaymentRequest | None, data: PaymentData
    ) -> PaymentResult:
        """Hand an approved payment over for settlement."""


class InMemoryUserDirectory:
    """Directory backed by a dict, keyed by user id."""

    def __init__(self, users: Iterable[Identity] = ()) -> None:
        self._users: Dict[str, Identity] = {u.user_id: u for u in users}

    def add(self, user: Identity) -> None:
        self._users[user.user_id] = user

    async def get_user(self, user_id: str) -> Identity | None:
        return self._users.get(user_id)


class InMemoryPaymentRequestStore:
    def __init__(self, requests: Iterable[PaymentRequest] = ()) -> None:
        self._requests: Dict[str, PaymentRequest] = {r.id: r for r in requests}

    def add(self, request: PaymentRequest) -> None:
        self._requests[request.id] = request

    async def get_payment_request(self, request_id: str) -> PaymentRequest | None:
        request = self._requests.get(request_id)
        return request.model_copy(deep=True) if request else None

    async def update_payment_request(self, request_id: str, **changes) -> None:
        request = self._requests.get(request_id)
        if request is None:
            logger.warning(f"Cannot mirror workflow state onto unknown request {request_id}")
            return
        self._requests[request_id] = request.model_copy(update=changes)


class RecordingPaymentGateway:
    """Gateway that records releases instead of moving money."""

    def __init__(self, succeed: bool = True) -> None:
        self.succeed = succeed
        self.released: List[str] = []

    async def release(
        self, payment_request: PaymentRequest | None, data: PaymentData
    ) -> PaymentResult:
        request_id = payment_request.id if payment_request else "unknown"
        if not self.succeed:
            return PaymentResult(success=False, error="payment declined")
        self.released.append(request_id)
        return PaymentResult(success=True, transaction_id=f"txn_{uuid.uuid4().hex[:12]}")
