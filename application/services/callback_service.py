"""
回调应用服务 - 校验并应用网关事件

所有来源（webhook、同步扣款/退款结果、对账复核）的网关事件都经由
PaymentEventApplier 这一条管线应用，共享同一个去重键，因此同步扣款与
异步回调天然互斥：后到的一方只会看到 "已应用"。

单次应用流程（一个事务）：
    去重检查 → 定位支付（孤儿回调则拒绝）→ 状态迁移（乐观锁）
    → 写入 applied 回调记录（唯一去重键）→ 重新计算订单状态
乐观锁冲突时整个事务回滚并从去重检查重新开始。
扣款/退款成功事件提交后再在独立事务中出具收据。

先于扣款到达的退款不丢弃：记为 deferred 并标记支付待复核，
扣款应用后按到达顺序重放，全部解决后清除该标记。
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, List, Mapping, Optional

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt

from application.processor_registry import ProcessorRegistry
from application.services.receipt_service import ReceiptBuilder
from core.logging_config import get_logger
from domain.common.exceptions import (
    ConcurrentUpdateException,
    DomainValidationException,
    DuplicateCallbackException,
    InvalidPaymentTransitionException,
    OrphanCallbackException,
    ReconciliationError,
    RejectedCallbackException,
    RefundExceededException,
    UnknownGatewayException,
)
from domain.common.money import Money
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.order.entity import OrderState
from domain.order.state import recompute
from domain.payment.callback import CallbackOutcome, CallbackRecord, CallbackSource
from domain.payment.entity import ReconciliationCause
from domain.payment.events import PaymentEvent, PaymentEventType, apply_event, event_amount


logger = get_logger(__name__)


@dataclass
class CallbackResult:
    gateway: str
    outcome: CallbackOutcome
    payment_id: Optional[int] = None
    order_id: Optional[int] = None
    record_id: Optional[int] = None
    amount: Optional[Money] = None
    reason: Optional[str] = None
    order_state: Optional[str] = None
    receipt_id: Optional[int] = None
    reconciliation_error: Optional[str] = None

    @property
    def applied(self) -> bool:
        return self.outcome == CallbackOutcome.APPLIED


class PaymentEventApplier:
    """支付事件应用管线（幂等、乐观并发）"""

    def __init__(
        self,
        uow_factory: Callable[..., AbstractUnitOfWork],
        receipt_builder: ReceiptBuilder,
        *,
        max_conflict_retries: int = 5,
    ):
        self._uow_factory = uow_factory
        self._receipt_builder = receipt_builder
        self._max_conflict_retries = max(1, max_conflict_retries)

    async def apply(
        self,
        event: PaymentEvent,
        *,
        source: CallbackSource,
        payload: str,
        replay_deferred: bool = True,
    ) -> CallbackResult:
        log = logger.bind(
            gateway=event.gateway,
            external_ref=event.external_ref,
            event_type=event.event_type.value,
            source=source.value,
        )

        attempt = 0
        while True:
            attempt += 1
            try:
                result = await self._apply_once(event, source, payload)
                break
            except ConcurrentUpdateException:
                if attempt >= self._max_conflict_retries:
                    log.error("callback_conflict_retries_exhausted", attempts=attempt)
                    raise
                log.info("callback_apply_conflict_retry", attempt=attempt)
            except DuplicateCallbackException as exc:
                log.info("callback_duplicate_ignored", dedup_key=exc.dedup_key, applied_record_id=exc.applied_record_id)
                result = await self._record_duplicate(event, source, payload, exc)
                break
            except OrphanCallbackException:
                log.warning("callback_orphan")
                result = await self.record(
                    CallbackRecord.for_event(
                        event,
                        source=source,
                        outcome=CallbackOutcome.REJECTED,
                        payload=payload,
                        reason="orphan",
                    )
                )
                break

        confirmed = result.payment_id is not None and result.outcome in (
            CallbackOutcome.APPLIED,
            CallbackOutcome.DUPLICATE_IGNORED,
        )
        if confirmed and event.is_financial():
            await self._ensure_receipt(event, result)
        if confirmed and replay_deferred:
            await self.replay_deferred(result.payment_id)  # type: ignore[arg-type]
        return result

    async def replay_deferred(self, payment_id: int) -> List[CallbackResult]:
        """支付越过 pending/authorized 后，按到达顺序重放暂存事件；全部解决后清除 deferred 标记"""
        async with self._uow_factory(readonly=True) as uow:
            payment = await uow.payment_repository.get_by_id(payment_id)
            if payment is None or ReconciliationCause.DEFERRED_EVENT not in payment.reconciliation_causes:
                return []
            if payment.is_in_flight():
                return []
            pending = await uow.callback_repository.list_unresolved_deferred(payment_id)

        results: List[CallbackResult] = []
        seen: set[str] = set()
        for record in pending:
            # the same refund may have been delivered more than once before the capture
            if record.event_key in seen:
                continue
            seen.add(record.event_key)  # type: ignore[arg-type]
            logger.info("callback_deferred_replay", payment_id=payment_id, record_id=record.id, event_key=record.event_key)
            results.append(
                await self.apply(record.to_event(), source=record.source, payload=record.payload, replay_deferred=False)
            )

        await self._retry_on_conflict(lambda: self._clear_deferred_flag(payment_id))
        return results

    async def _clear_deferred_flag(self, payment_id: int) -> None:
        async with self._uow_factory() as uow:
            if await uow.callback_repository.list_unresolved_deferred(payment_id):
                return
            payment = await uow.payment_repository.get_by_id(payment_id)
            if payment is not None and payment.clear_reconciliation(ReconciliationCause.DEFERRED_EVENT):
                await uow.payment_repository.update(payment)
                logger.info("callback_deferred_drained", payment_id=payment_id)

    async def _retry_on_conflict(self, fn: Callable[[], object]):
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self._max_conflict_retries),
            retry=retry_if_exception_type(ConcurrentUpdateException),
            reraise=True,
        ):
            with attempt:
                return await fn()

    async def _apply_once(self, event: PaymentEvent, source: CallbackSource, payload: str) -> CallbackResult:
        async with self._uow_factory() as uow:
            applied = await uow.callback_repository.get_applied(event.dedup_key)
            if applied is not None:
                raise DuplicateCallbackException(event.dedup_key, applied.id)

            payment = await uow.payment_repository.get_by_external_ref(event.gateway, event.external_ref)
            if payment is None:
                raise OrphanCallbackException(event.gateway, event.external_ref)

            log = logger.bind(payment_id=payment.id, order_id=payment.order_id, event_type=event.event_type.value)
            reason: Optional[str] = None
            try:
                changed = apply_event(payment, event)
                outcome = CallbackOutcome.APPLIED if changed else CallbackOutcome.IGNORED
                if not changed:
                    # a concurrent delivery may have committed between the dedup check and the read
                    applied = await uow.callback_repository.get_applied(event.dedup_key)
                    if applied is not None:
                        raise DuplicateCallbackException(event.dedup_key, applied.id)
                    reason = f"payment already {payment.state.value}"
            except InvalidPaymentTransitionException as exc:
                changed = False
                if event.event_type == PaymentEventType.REFUND_SUCCEEDED and payment.is_in_flight():
                    # refund reported before its capture: park it until the capture is applied
                    outcome, reason = CallbackOutcome.DEFERRED, f"awaiting capture (payment {payment.state.value})"
                    flagged = payment.flag_for_reconciliation(reason, ReconciliationCause.DEFERRED_EVENT)
                    log.info("callback_deferred", state=payment.state.value)
                else:
                    # e.g. capture reported for a payment already marked failed: money may have moved
                    outcome, reason = CallbackOutcome.IGNORED, exc.message
                    flagged = payment.flag_for_reconciliation(exc.message, ReconciliationCause.CONFLICT)
                    log.error("callback_transition_conflict", state=payment.state.value, reason=reason)
                if flagged:
                    await uow.payment_repository.update(payment)
            except (RefundExceededException, DomainValidationException) as exc:
                changed, outcome, reason = False, CallbackOutcome.REJECTED, exc.message
                if payment.flag_for_reconciliation(exc.message, ReconciliationCause.CONFLICT):
                    await uow.payment_repository.update(payment)
                log.error("callback_rejected_invalid_event", reason=reason)

            amount = event_amount(payment, event) if outcome == CallbackOutcome.APPLIED else event.amount
            if changed:
                if event.event_type != PaymentEventType.REFUND_SUCCEEDED:
                    # collection outcome is known now
                    payment.clear_reconciliation(ReconciliationCause.OUTCOME_UNKNOWN)
                await uow.payment_repository.update(payment)
            record = await uow.callback_repository.add(
                CallbackRecord.for_event(
                    event,
                    source=source,
                    outcome=outcome,
                    payload=payload,
                    payment_id=payment.id,
                    amount=amount,
                    reason=reason,
                )
            )

            order_state = None
            if changed:
                order = await uow.order_repository.get_by_id(payment.order_id, for_update=True)
                if order is not None:
                    if order.state == OrderState.CANCELLED and event.event_type == PaymentEventType.CAPTURE_SUCCEEDED:
                        log.warning("late_capture_on_cancelled_order", amount=payment.amount.minor)
                    # re-read every payment of the order inside this transaction
                    payments = await uow.payment_repository.list_by_order(order.id)  # type: ignore[arg-type]
                    if recompute(order, payments):
                        await uow.order_repository.update_state(order)
                    order_state = order.state.value

            if outcome == CallbackOutcome.APPLIED:
                log.info("callback_applied", payment_state=payment.state.value, order_state=order_state)
            elif outcome == CallbackOutcome.IGNORED:
                log.info("callback_ignored", reason=reason)

            return CallbackResult(
                gateway=event.gateway,
                outcome=outcome,
                payment_id=payment.id,
                order_id=payment.order_id,
                record_id=record.id,
                amount=amount,
                reason=reason,
                order_state=order_state,
            )

    async def record(self, record: CallbackRecord) -> CallbackResult:
        async with self._uow_factory() as uow:
            saved = await uow.callback_repository.add(record)
        return CallbackResult(
            gateway=record.gateway,
            outcome=record.outcome,
            payment_id=record.payment_id,
            record_id=saved.id,
            amount=record.amount,
            reason=record.reason,
        )

    async def _record_duplicate(
        self,
        event: PaymentEvent,
        source: CallbackSource,
        payload: str,
        exc: DuplicateCallbackException,
    ) -> CallbackResult:
        async with self._uow_factory() as uow:
            applied = await uow.callback_repository.get_applied(exc.dedup_key)
            payment_id = applied.payment_id if applied else None
            amount = applied.amount if applied else event.amount
            saved = await uow.callback_repository.add(
                CallbackRecord.for_event(
                    event,
                    source=source,
                    outcome=CallbackOutcome.DUPLICATE_IGNORED,
                    payload=payload,
                    payment_id=payment_id,
                    amount=amount,
                    reason=f"duplicate of record {exc.applied_record_id}",
                )
            )
        return CallbackResult(
            gateway=event.gateway,
            outcome=CallbackOutcome.DUPLICATE_IGNORED,
            payment_id=payment_id,
            record_id=saved.id,
            amount=amount,
            reason=saved.reason,
        )

    async def _ensure_receipt(self, event: PaymentEvent, result: CallbackResult) -> None:
        """出具收据；对重复事件同样调用，可补齐上次中断时缺失的收据"""
        if result.amount is None:
            return
        try:
            receipt, _ = await self._receipt_builder.issue_for_event(
                result.payment_id,  # type: ignore[arg-type]
                event.event_key,
                event.event_type.value,
                result.amount,
            )
            result.receipt_id = receipt.id
        except ReconciliationError as exc:
            # payment transition stays committed; the receipt is escalated for backfill/manual fix
            result.reconciliation_error = exc.message


class CallbackProcessor:
    """单个网关的回调处理器：验签 → 应用"""

    def __init__(self, gateway: str, registry: ProcessorRegistry, applier: PaymentEventApplier):
        self.gateway = gateway
        self._processor = registry.for_gateway(gateway)
        self._applier = applier

    async def handle(self, headers: Mapping[str, str], body: bytes) -> CallbackResult:
        payload = body.decode("utf-8", errors="replace")
        try:
            event = self._processor.verify_callback(headers, body)
        except RejectedCallbackException as exc:
            logger.warning("callback_rejected", gateway=self.gateway, reason=exc.reason)
            await self._applier.record(CallbackRecord.rejected_signature(self.gateway, payload, exc.reason))
            raise

        if event is None:
            logger.info("callback_unhandled_event_type", gateway=self.gateway)
            return await self._applier.record(
                CallbackRecord(
                    id=None,
                    gateway=self.gateway,
                    source=CallbackSource.WEBHOOK,
                    outcome=CallbackOutcome.IGNORED,
                    payload=payload,
                    signature_valid=True,
                    reason="unhandled event type",
                )
            )

        return await self._applier.apply(event, source=CallbackSource.WEBHOOK, payload=payload)


class CallbackDispatcher:
    """按网关键分发回调；在进程启动时一次性建立映射"""

    def __init__(self, registry: ProcessorRegistry, applier: PaymentEventApplier):
        self._processors = {
            key: CallbackProcessor(key, registry, applier) for key in registry.keys()
        }

    def get(self, gateway: str) -> CallbackProcessor:
        try:
            return self._processors[gateway]
        except KeyError:
            raise UnknownGatewayException(gateway) from None

    async def dispatch(self, gateway: str, headers: Mapping[str, str], body: bytes) -> CallbackResult:
        return await self.get(gateway).handle(headers, body)
