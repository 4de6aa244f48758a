"""Request pipeline for the AI proxy.

A request moves through these stages, and any stage may end it with a
typed rejection:

1. Validate the body (shape, roles, sizes, provider name)
2. Authenticate the bearer token
3. Confirm the token identity matches ``userId`` in the body
4. Admit the request against the user's rate-limit window
5. Check the user's credit balance (advisory)
6. Dispatch to the provider adapter
7. Consume one credit (guarded decrement)
8. Record the interaction (detached, best-effort)

Validation runs before authentication, so a malformed body is rejected
without touching the identity service or any shared state. No stage retries.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Optional, Tuple, Type

from google.cloud import firestore

from uplift_gateway.auth import (
    FirebaseTokenVerifier,
    IdentityVerifier,
    StaticTokenVerifier,
    confirm_identity,
    extract_bearer_token,
)
from uplift_gateway.config import GatewayConfig, ValidationLimits
from uplift_gateway.credits import CreditLedger, FirestoreCreditLedger, InMemoryCreditLedger
from uplift_gateway.errors import (
    AuthenticationError,
    AuthorizationError,
    GatewayError,
    InsufficientCreditsError,
    InternalError,
    NotFoundError,
    QuotaExceededError,
    UnsupportedProviderError,
    UpstreamProviderError,
    ValidationError,
)
from uplift_gateway.interactions import (
    FirestoreInteractionSink,
    InMemoryInteractionSink,
    InteractionLogger,
    InteractionSink,
    JsonlInteractionSink,
)
from uplift_gateway.models import CanonicalRequest, CanonicalResponse, InteractionLogEntry
from uplift_gateway.quota import FirestoreQuotaStore, InMemoryQuotaStore, QuotaStore
from uplift_gateway.router import ProviderRegistry, build_registry
from uplift_gateway.telemetry import log_request
from uplift_gateway.validation import parse_body, validate_request

_logger = logging.getLogger("gateway")

_OUTCOMES: Tuple[Tuple[Type[GatewayError], str], ...] = (
    (UnsupportedProviderError, "unsupported_provider"),
    (ValidationError, "validation_error"),
    (AuthenticationError, "unauthenticated"),
    (AuthorizationError, "identity_mismatch"),
    (QuotaExceededError, "rate_limited"),
    (NotFoundError, "user_not_found"),
    (InsufficientCreditsError, "no_credits"),
    (UpstreamProviderError, "provider_error"),
)


def _outcome(exc: GatewayError) -> str:
    for error_cls, label in _OUTCOMES:
        if isinstance(exc, error_cls):
            return label
    return "internal_error"


class Gateway:
    """Runs one AI proxy request end to end.

    All collaborators are injected; the gateway holds no per-user state of its
    own, so any number of instances can serve the same users concurrently as
    long as they share the quota store and credit ledger.
    """

    def __init__(
        self,
        *,
        verifier: IdentityVerifier,
        quota: QuotaStore,
        ledger: CreditLedger,
        providers: ProviderRegistry,
        interactions: InteractionLogger,
        limits: Optional[ValidationLimits] = None,
        operation: str = "ai",
    ) -> None:
        self.verifier = verifier
        self.quota = quota
        self.ledger = ledger
        self.providers = providers
        self.interactions = interactions
        self.limits = limits or ValidationLimits()
        self.operation = operation

    async def handle(
        self, raw_body: bytes, authorization: Optional[str]
    ) -> CanonicalResponse:
        """Process one request.

        Args:
            raw_body: The undecoded request body.
            authorization: The Authorization header value, if any.

        Returns:
            The provider's normalized response.

        Raises:
            GatewayError: The typed rejection for whichever stage failed.
        """
        request_id = "ai-{}".format(uuid.uuid4().hex[:12])
        request: Optional[CanonicalRequest] = None

        try:
            request = validate_request(
                parse_body(raw_body), self.providers, self.limits
            )
            token = extract_bearer_token(authorization)
            token_user_id = await self.verifier.verify(token)
            confirm_identity(token_user_id, request.user_id)
            await self.quota.check(request.user_id, self.operation)
            await self.ledger.check(request.user_id)
            adapter = self.providers.resolve(request.provider)
            result = await adapter.call(request)
        except GatewayError as exc:
            log_request(
                outcome=_outcome(exc),
                request_id=request_id,
                user_id=request.user_id if request else None,
                provider=request.provider if request else None,
                error=exc.detail,
                wait_seconds=getattr(exc, "wait_seconds", None),
            )
            raise
        except Exception as exc:
            _logger.exception("Unhandled error in request %s", request_id)
            log_request(
                outcome="internal_error",
                request_id=request_id,
                user_id=request.user_id if request else None,
                provider=request.provider if request else None,
                error=str(exc),
            )
            raise InternalError(detail=str(exc)) from exc

        await self._consume_credit(request, request_id)
        self.interactions.log(
            InteractionLogEntry(
                user_id=request.user_id,
                input=request.messages,
                output=result.text,
                timestamp=datetime.now(timezone.utc).isoformat(),
                provider=result.provider,
            )
        )
        log_request(
            outcome="success",
            request_id=request_id,
            user_id=request.user_id,
            provider=result.provider,
            usage=result.usage,
        )
        return result

    async def _consume_credit(self, request: CanonicalRequest, request_id: str) -> None:
        """Decrement the balance after a successful dispatch.

        A failure here does not fail the request: the caller already has a
        completion, so the credit is left unconsumed and the miss is logged.
        """
        try:
            consumed = await self.ledger.commit(request.user_id)
        except Exception as exc:
            _logger.exception("Credit commit failed for user %s", request.user_id)
            log_request(
                outcome="credit_commit_failed",
                request_id=request_id,
                user_id=request.user_id,
                provider=request.provider,
                error=str(exc),
            )
            return
        if not consumed:
            log_request(
                outcome="credit_commit_failed",
                request_id=request_id,
                user_id=request.user_id,
                provider=request.provider,
                error="Balance exhausted by a concurrent request",
            )


def build_gateway(config: GatewayConfig) -> Gateway:
    """Assemble a Gateway from configuration."""
    client: Optional[firestore.AsyncClient] = None
    if config.store.backend == "firestore" or config.interactions.sink == "firestore":
        client = firestore.AsyncClient(project=config.store.project_id)

    verifier: IdentityVerifier
    if config.auth.mode == "static":
        verifier = StaticTokenVerifier(config.auth.static_tokens)
    else:
        verifier = FirebaseTokenVerifier(config.auth.project_id or "")

    quota: QuotaStore
    ledger: CreditLedger
    if config.store.backend == "firestore":
        quota = FirestoreQuotaStore(
            client, config.rate_limits, collection=config.store.rate_limits_collection
        )
        ledger = FirestoreCreditLedger(
            client,
            collection=config.store.users_collection,
            credits_field=config.store.credits_field,
        )
    else:
        quota = InMemoryQuotaStore(config.rate_limits)
        memory_ledger = InMemoryCreditLedger()
        for user_id, balance in config.store.seed_balances.items():
            memory_ledger.set_balance(user_id, balance)
        ledger = memory_ledger

    sink: InteractionSink
    if config.interactions.sink == "firestore":
        sink = FirestoreInteractionSink(
            client, collection=config.store.interactions_collection
        )
    elif config.interactions.sink == "jsonl":
        sink = JsonlInteractionSink(config.interactions.path)
    else:
        sink = InMemoryInteractionSink()

    return Gateway(
        verifier=verifier,
        quota=quota,
        ledger=ledger,
        providers=build_registry(config),
        interactions=InteractionLogger(
            sink, timeout=config.interactions.drain_timeout_seconds
        ),
        limits=config.validation,
    )
