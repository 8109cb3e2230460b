"""
Application service orchestrating payment use-cases.

Depends only on the PaymentProcessor port (through the ProcessorRegistry)
and the Unit of Work. Gateway implementations come from infrastructure and
are injected from the composition root (API/tasks), keeping dependencies
one-way. Every gateway fact (sync authorization, sync capture, sync refund,
reconciliation lookup) is applied through PaymentEventApplier so it shares
dedup keys with webhooks.
"""
from __future__ import annotations

import json
from typing import Callable, Optional, Tuple

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt

from application.dtos.payments import (
    CardPaymentRequest,
    PaymentDTO,
    PaymentInitiationDTO,
    RedirectPaymentRequest,
    RefundRequest,
)
from application.ports.payment_processor import OrderContext, PaymentFlow, PaymentProcessor
from application.processor_registry import ProcessorRegistry
from application.services.callback_service import CallbackResult, PaymentEventApplier
from core.logging_config import get_logger
from domain.common.exceptions import (
    AmbiguousGatewayOutcomeException,
    BusinessException,
    ConcurrentUpdateException,
    DomainValidationException,
    GatewayDeclinedException,
    GatewayUnavailableException,
    OrderNotFoundException,
    PaymentNotFoundException,
    RefundExceededException,
)
from domain.common.money import Money
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.order.entity import Order
from domain.order.state import recompute
from domain.payment.callback import CallbackOutcome, CallbackSource
from domain.payment.entity import Payment, PaymentState, ReconciliationCause
from domain.payment.events import PaymentEvent
from domain.payment.refund import RefundRequestRecord, RefundStatus
from domain.payment.service import PaymentBuilder


logger = get_logger(__name__)


def _order_description(order: Order) -> str:
    first = order.lines[0].description
    extra = len(order.lines) - 1
    return f"{first} +{extra} more" if extra else first


class PaymentApplicationService:
    """支付应用服务 - 发起支付、同步扣款、退款与对账复核"""

    def __init__(
        self,
        uow_factory: Callable[..., AbstractUnitOfWork],
        registry: ProcessorRegistry,
        applier: PaymentEventApplier,
        *,
        max_conflict_retries: int = 5,
    ):
        self._uow_factory = uow_factory
        self._registry = registry
        self._applier = applier
        self._max_conflict_retries = max(1, max_conflict_retries)

    async def _retry_on_conflict(self, fn: Callable[[], object]):
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self._max_conflict_retries),
            retry=retry_if_exception_type(ConcurrentUpdateException),
            reraise=True,
        ):
            with attempt:
                return await fn()

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------
    async def _build_payment(
        self,
        order_id: int,
        processor: str,
        idempotency_key: str,
        amount: Optional[int],
    ) -> Tuple[Payment, bool, Order]:
        async def _build():
            async with self._uow_factory() as uow:
                builder = PaymentBuilder(uow.order_repository, uow.payment_repository, self._registry)
                payment, created = await builder.build(order_id, processor, idempotency_key, amount)
                order = await uow.order_repository.get_by_id(order_id)
                return payment, created, order

        payment, created, order = await self._retry_on_conflict(_build)
        logger.info(
            "payment_built",
            payment_id=payment.id,
            order_id=order_id,
            processor=processor,
            created=created,
            amount=payment.amount.minor,
        )
        return payment, created, order

    def _processor_for_flow(self, key: str, flow: PaymentFlow) -> PaymentProcessor:
        processor = self._registry.get(key)
        if processor.flow != flow:
            raise DomainValidationException(
                f"处理器 {key} 不支持 {flow.value} 支付流程",
                field="processor",
            )
        return processor

    async def start_redirect_payment(self, order_id: int, req: RedirectPaymentRequest) -> PaymentInitiationDTO:
        """跳转支付：创建支付并返回网关收银台地址，结果由 webhook 回传"""
        processor = self._processor_for_flow(req.processor, PaymentFlow.REDIRECT)
        payment, created, order = await self._build_payment(order_id, req.processor, req.idempotency_key, req.amount)

        redirect_url = None
        if payment.state == PaymentState.PENDING and not payment.needs_reconciliation:
            context = OrderContext(
                order_id=order_id,
                total=order.total,
                description=_order_description(order),
                buyer_ref=order.buyer_ref,
                return_url=req.return_url,
            )
            payment, redirect_url, _ = await self._initiate(processor, payment, context)

        return await self._initiation_result(payment, created, redirect_url=redirect_url)

    async def pay_with_card(self, order_id: int, req: CardPaymentRequest) -> PaymentInitiationDTO:
        """卡支付：授权后在同一请求内同步扣款；扣款结果走回调同一管线"""
        processor = self._processor_for_flow(req.processor, PaymentFlow.CARD)
        payment, created, order = await self._build_payment(order_id, req.processor, req.idempotency_key, req.amount)

        client_secret = None
        if payment.state == PaymentState.PENDING and payment.external_ref is None and not payment.needs_reconciliation:
            context = OrderContext(
                order_id=order_id,
                total=order.total,
                description=_order_description(order),
                buyer_ref=order.buyer_ref,
                payment_token=req.payment_token,
            )
            payment, _, client_secret = await self._initiate(processor, payment, context)

        result: Optional[CallbackResult] = None
        if payment.state == PaymentState.AUTHORIZED and not payment.needs_reconciliation:
            result = await self._capture(processor, payment)
            payment = await self._load_payment(payment.id)  # type: ignore[arg-type]

        return await self._initiation_result(payment, created, client_secret=client_secret, result=result)

    async def _initiate(
        self,
        processor: PaymentProcessor,
        payment: Payment,
        context: OrderContext,
    ) -> Tuple[Payment, Optional[str], Optional[str]]:
        log = logger.bind(payment_id=payment.id, order_id=payment.order_id, processor=processor.key)
        try:
            initiation = await processor.initiate(payment, context)
        except GatewayUnavailableException:
            log.error("payment_initiate_unavailable")
            await self._fail_payment(payment.id, "gateway unavailable")  # type: ignore[arg-type]
            raise
        except GatewayDeclinedException as exc:
            log.warning("payment_initiate_declined", reason=exc.reason)
            await self._fail_payment(payment.id, exc.reason)  # type: ignore[arg-type]
            raise
        except AmbiguousGatewayOutcomeException:
            log.warning("payment_initiate_ambiguous")
            await self._flag_payment(payment.id, "initiate outcome unknown")  # type: ignore[arg-type]
            raise

        payment = await self._bind_external_ref(payment.id, initiation.external_ref)  # type: ignore[arg-type]
        log.info("payment_initiated", external_ref=initiation.external_ref)
        if initiation.event is not None:
            await self._apply_sync(initiation.event)
            payment = await self._load_payment(payment.id)  # type: ignore[arg-type]
        return payment, initiation.redirect_url, initiation.client_secret

    async def _capture(self, processor: PaymentProcessor, payment: Payment) -> Optional[CallbackResult]:
        log = logger.bind(payment_id=payment.id, order_id=payment.order_id, processor=processor.key)
        try:
            event = await processor.capture(payment)
        except GatewayUnavailableException:
            log.error("payment_capture_unavailable")
            await self._fail_payment(payment.id, "gateway unavailable during capture")  # type: ignore[arg-type]
            raise
        except AmbiguousGatewayOutcomeException:
            log.warning("payment_capture_ambiguous")
            await self._flag_payment(payment.id, "capture outcome unknown")  # type: ignore[arg-type]
            raise
        return await self._apply_sync(event)

    async def _apply_sync(self, event: PaymentEvent, source: CallbackSource = CallbackSource.SYNC) -> CallbackResult:
        return await self._applier.apply(
            event,
            source=source,
            payload=json.dumps(event.to_payload(), ensure_ascii=False, sort_keys=True),
        )

    # ------------------------------------------------------------------
    # Refunds
    # ------------------------------------------------------------------
    async def refund_payment(self, payment_id: int, req: RefundRequest) -> PaymentDTO:
        """
        发起退款，按 (支付, 幂等键) 去重：

        - 同一幂等键的重放直接返回当前支付，不再调用网关；
        - 只有上次网关未受理（failed）时才用同一幂等键重新提交；
        - 同步成功的退款经回调管线应用，之后的 webhook 判为重复。
        """
        payment = await self._load_payment(payment_id)
        amount = Money(req.amount, payment.currency)
        refund, submit = await self._retry_on_conflict(
            lambda: self._open_refund(payment_id, req.idempotency_key, amount)
        )
        if not submit:
            logger.info(
                "payment_refund_replayed",
                payment_id=payment_id,
                refund_key=req.idempotency_key,
                status=refund.status.value,
            )
            return PaymentDTO.from_entity(await self._load_payment(payment_id))

        processor = self._registry.get(payment.processor)
        log = logger.bind(payment_id=payment.id, order_id=payment.order_id, processor=processor.key)
        try:
            event = await processor.refund(payment, amount, req.idempotency_key)
        except GatewayUnavailableException:
            # nothing was accepted by the gateway: the captured payment stays as is
            log.error("payment_refund_unavailable", amount=amount.minor)
            await self._update_refund(payment_id, req.idempotency_key, RefundStatus.FAILED, reason="gateway unavailable")
            raise
        except GatewayDeclinedException as exc:
            log.warning("payment_refund_declined", amount=amount.minor, reason=exc.reason)
            await self._update_refund(payment_id, req.idempotency_key, RefundStatus.FAILED, reason=exc.reason)
            raise
        except AmbiguousGatewayOutcomeException:
            log.warning("payment_refund_ambiguous", amount=amount.minor)
            await self._update_refund(payment_id, req.idempotency_key, RefundStatus.UNKNOWN)
            await self._flag_payment(payment_id, "refund outcome unknown", ReconciliationCause.REFUND_UNKNOWN)
            raise

        log.info("payment_refund_requested", amount=amount.minor, reason=req.reason, settled=event is not None)
        await self._record_refund_outcome(payment_id, req.idempotency_key, event, CallbackSource.SYNC)
        return PaymentDTO.from_entity(await self._load_payment(payment_id))

    async def _open_refund(self, payment_id: int, refund_key: str, amount: Money) -> Tuple[RefundRequestRecord, bool]:
        """返回 (退款请求, 是否需要调用网关)"""
        async with self._uow_factory() as uow:
            refund = await uow.refund_repository.get(payment_id, refund_key)
            if refund is not None:
                if refund.amount != amount:
                    raise DomainValidationException(
                        f"幂等键 {refund_key} 已用于金额 {refund.amount.minor} 的退款",
                        field="idempotency_key",
                    )
                if not refund.is_retryable():
                    return refund, False

            payment = await uow.payment_repository.get_by_id(payment_id)
            if payment is None:
                raise PaymentNotFoundException(payment_id)
            refundable = payment.refundable_amount()
            if amount > refundable:
                raise RefundExceededException(amount.minor, refundable.minor)

            if refund is None:
                refund = await uow.refund_repository.add(
                    RefundRequestRecord(id=None, payment_id=payment_id, refund_key=refund_key, amount=amount)
                )
            else:
                refund.transition(RefundStatus.REQUESTED)
                await uow.refund_repository.update(refund)
            return refund, True

    async def _record_refund_outcome(
        self,
        payment_id: int,
        refund_key: str,
        event: Optional[PaymentEvent],
        source: CallbackSource,
    ) -> None:
        if event is None:
            await self._update_refund(payment_id, refund_key, RefundStatus.SUBMITTED)
            return
        await self._update_refund(payment_id, refund_key, RefundStatus.SUCCEEDED, refund_ref=event.refund_ref)
        await self._apply_sync(event, source)

    async def _update_refund(
        self,
        payment_id: int,
        refund_key: str,
        status: RefundStatus,
        *,
        refund_ref: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> None:
        async def _do():
            async with self._uow_factory() as uow:
                refund = await uow.refund_repository.get(payment_id, refund_key)
                if refund is not None and refund.transition(status, refund_ref=refund_ref, reason=reason):
                    await uow.refund_repository.update(refund)

        await self._retry_on_conflict(_do)

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------
    async def reverify_payment(self, payment_id: int) -> PaymentDTO:
        """
        按待复核原因向网关复核支付：

        - outcome_unknown / deferred_event：查询收款结果并经回调管线应用；
        - refund_unknown：用原幂等键重新提交超时的退款，网关按幂等键返回原结果；
        - conflict：网关事实与本地状态矛盾，不自动清除，留给人工处理。
        """
        payment = await self._load_payment(payment_id)
        if not payment.needs_reconciliation:
            return PaymentDTO.from_entity(payment)

        processor = self._registry.get(payment.processor)
        log = logger.bind(payment_id=payment.id, order_id=payment.order_id, processor=processor.key)
        causes = set(payment.reconciliation_causes)
        if causes & {ReconciliationCause.OUTCOME_UNKNOWN, ReconciliationCause.DEFERRED_EVENT}:
            await self._reverify_collection(processor, payment)
        if ReconciliationCause.REFUND_UNKNOWN in causes:
            await self._reverify_refunds(processor, payment)

        payment = await self._load_payment(payment_id)
        if ReconciliationCause.CONFLICT in payment.reconciliation_causes:
            log.error("payment_reverify_conflict", state=payment.state.value, reason=payment.failure_reason)
        return PaymentDTO.from_entity(payment)

    async def _reverify_collection(self, processor: PaymentProcessor, payment: Payment) -> None:
        log = logger.bind(payment_id=payment.id, order_id=payment.order_id, processor=processor.key)
        try:
            event = await processor.lookup(payment)
        except (GatewayUnavailableException, AmbiguousGatewayOutcomeException):
            log.warning("payment_reverify_deferred")
            return

        if event is None:
            if payment.external_ref is None and payment.state == PaymentState.PENDING:
                # the gateway never saw the initiation
                log.info("payment_reverify_not_found")
                await self._fail_payment(
                    payment.id, "not found at gateway", clear=ReconciliationCause.OUTCOME_UNKNOWN  # type: ignore[arg-type]
                )
            else:
                log.info("payment_reverify_no_outcome")
            return

        if payment.external_ref is None:
            await self._bind_external_ref(payment.id, event.external_ref)  # type: ignore[arg-type]
        result = await self._apply_sync(event, CallbackSource.RECONCILIATION)
        log.info("payment_reverified", outcome=result.outcome.value, event_type=event.event_type.value)

        if result.outcome in (CallbackOutcome.APPLIED, CallbackOutcome.DUPLICATE_IGNORED):
            # the gateway outcome is now recorded locally
            await self._clear_flag(payment.id, ReconciliationCause.OUTCOME_UNKNOWN)  # type: ignore[arg-type]
        elif result.outcome == CallbackOutcome.IGNORED:
            log.info("payment_reverify_outcome_unchanged", reason=result.reason)

    async def _reverify_refunds(self, processor: PaymentProcessor, payment: Payment) -> None:
        log = logger.bind(payment_id=payment.id, order_id=payment.order_id, processor=processor.key)
        async with self._uow_factory(readonly=True) as uow:
            unknown = await uow.refund_repository.list_unknown(payment.id)  # type: ignore[arg-type]

        for refund in unknown:
            try:
                event = await processor.refund(payment, refund.amount, refund.refund_key)
            except (GatewayUnavailableException, AmbiguousGatewayOutcomeException):
                log.warning("payment_refund_reverify_deferred", refund_key=refund.refund_key)
                return
            except GatewayDeclinedException as exc:
                log.warning("payment_refund_reverify_declined", refund_key=refund.refund_key, reason=exc.reason)
                await self._update_refund(refund.payment_id, refund.refund_key, RefundStatus.FAILED, reason=exc.reason)
                continue
            log.info("payment_refund_reverified", refund_key=refund.refund_key, settled=event is not None)
            await self._record_refund_outcome(refund.payment_id, refund.refund_key, event, CallbackSource.RECONCILIATION)

        await self._clear_flag(payment.id, ReconciliationCause.REFUND_UNKNOWN)  # type: ignore[arg-type]

    async def reconcile_flagged(self, limit: int = 100, *, max_pages: int = 10) -> dict:
        """按支付ID游标分页复核待复核支付；单笔失败只记日志，不中断整批"""
        scanned, resolved, escalated = 0, 0, 0
        after_id = 0
        for _ in range(max(1, max_pages)):
            async with self._uow_factory(readonly=True) as uow:
                flagged = await uow.payment_repository.list_needing_reconciliation(limit, after_id=after_id)
            for payment in flagged:
                scanned += 1
                after_id = payment.id  # type: ignore[assignment]
                try:
                    dto = await self.reverify_payment(payment.id)  # type: ignore[arg-type]
                except BusinessException as exc:
                    logger.error("payment_reverify_failed", payment_id=payment.id, code=exc.code, error=exc.message)
                    continue
                if not dto.needs_reconciliation:
                    resolved += 1
                elif ReconciliationCause.CONFLICT.value in dto.reconciliation_causes:
                    escalated += 1
            if len(flagged) < limit:
                break
        if scanned:
            logger.info("payments_reconciled", scanned=scanned, resolved=resolved, escalated=escalated)
        return {"scanned": scanned, "resolved": resolved, "escalated": escalated}

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    async def get_payment(self, payment_id: int) -> PaymentDTO:
        return PaymentDTO.from_entity(await self._load_payment(payment_id))

    async def list_order_payments(self, order_id: int) -> list[PaymentDTO]:
        async with self._uow_factory(readonly=True) as uow:
            order = await uow.order_repository.get_by_id(order_id)
            if order is None:
                raise OrderNotFoundException(order_id)
            payments = await uow.payment_repository.list_by_order(order_id)
        return [PaymentDTO.from_entity(p) for p in payments]

    # ------------------------------------------------------------------
    # Helpers (each one transaction, retried on optimistic conflicts)
    # ------------------------------------------------------------------
    async def _load_payment(self, payment_id: int) -> Payment:
        async with self._uow_factory(readonly=True) as uow:
            payment = await uow.payment_repository.get_by_id(payment_id)
        if payment is None:
            raise PaymentNotFoundException(payment_id)
        return payment

    async def _mutate_payment(self, payment_id: int, mutate: Callable[[Payment], bool]) -> Payment:
        async def _do():
            async with self._uow_factory() as uow:
                payment = await uow.payment_repository.get_by_id(payment_id)
                if payment is None:
                    raise PaymentNotFoundException(payment_id)
                if not mutate(payment):
                    return payment
                await uow.payment_repository.update(payment)
                order = await uow.order_repository.get_by_id(payment.order_id, for_update=True)
                if order is not None:
                    payments = await uow.payment_repository.list_by_order(payment.order_id)
                    if recompute(order, payments):
                        await uow.order_repository.update_state(order)
                return payment

        return await self._retry_on_conflict(_do)

    async def _fail_payment(
        self,
        payment_id: int,
        reason: str,
        *,
        clear: Optional[ReconciliationCause] = None,
    ) -> Payment:
        def _fail(p: Payment) -> bool:
            changed = p.mark_failed(reason) if p.is_in_flight() else False
            if clear is not None:
                changed = p.clear_reconciliation(clear) or changed
            return changed

        return await self._mutate_payment(payment_id, _fail)

    async def _flag_payment(
        self,
        payment_id: int,
        reason: str,
        cause: ReconciliationCause = ReconciliationCause.OUTCOME_UNKNOWN,
    ) -> Payment:
        return await self._mutate_payment(payment_id, lambda p: p.flag_for_reconciliation(reason, cause))

    async def _clear_flag(self, payment_id: int, cause: ReconciliationCause) -> Payment:
        return await self._mutate_payment(payment_id, lambda p: p.clear_reconciliation(cause))

    async def _bind_external_ref(self, payment_id: int, external_ref: str) -> Payment:
        def _bind(p: Payment) -> bool:
            if p.external_ref == external_ref:
                return False
            p.bind_external_ref(external_ref)
            return True

        return await self._mutate_payment(payment_id, _bind)

    async def _initiation_result(
        self,
        payment: Payment,
        created: bool,
        *,
        redirect_url: Optional[str] = None,
        client_secret: Optional[str] = None,
        result: Optional[CallbackResult] = None,
    ) -> PaymentInitiationDTO:
        async with self._uow_factory(readonly=True) as uow:
            order = await uow.order_repository.get_by_id(payment.order_id)
        return PaymentInitiationDTO(
            payment=PaymentDTO.from_entity(payment),
            created=created,
            order_state=order.state.value if order else "unknown",
            redirect_url=redirect_url,
            client_secret=client_secret,
            receipt_id=result.receipt_id if result else None,
            reconciliation_error=result.reconciliation_error if result else None,
        )
