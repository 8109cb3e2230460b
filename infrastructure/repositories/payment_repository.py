"""
支付、回调记录与退款请求仓储（SQLAlchemy）

支付更新走 version 乐观锁；回调记录只插入不更新，dedup_key 唯一约束兜底去重。
"""
from typing import Optional, List

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from domain.common.exceptions import ConcurrentUpdateException
from domain.common.money import Money
from domain.payment.callback import CallbackOutcome, CallbackRecord, CallbackSource
from domain.payment.entity import Payment, PaymentState, ReconciliationCause, format_causes, parse_causes
from domain.payment.events import FINANCIAL_EVENT_TYPES
from domain.payment.refund import RefundRequestRecord, RefundStatus
from domain.payment.repository import PaymentRepository, CallbackRepository, RefundRequestRepository
from infrastructure.models.payment import PaymentModel, CallbackRecordModel, RefundRequestModel
from infrastructure.models.receipt import ReceiptModel
from core.logging_config import get_logger


logger = get_logger(__name__)


class SQLAlchemyPaymentRepository(PaymentRepository):
    """支付仓储的SQLAlchemy实现"""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: PaymentModel) -> Payment:
        """将数据库模型转换为领域实体"""
        return Payment(
            id=model.id,
            order_id=model.order_id,
            processor=model.processor,
            amount=Money(int(model.amount_minor), model.currency),
            idempotency_key=model.idempotency_key,
            state=PaymentState(model.state),
            external_ref=model.external_ref,
            refunded_amount=Money(int(model.refunded_minor), model.currency),
            reconciliation_causes=parse_causes(model.reconciliation_causes),
            failure_reason=model.failure_reason,
            version=model.version,
            created_at=model.created_at,
            updated_at=model.updated_at,
            captured_at=model.captured_at,
        )

    def _to_model(self, entity: Payment) -> PaymentModel:
        """将领域实体转换为数据库模型"""
        return PaymentModel(
            id=entity.id,
            order_id=entity.order_id,
            processor=entity.processor,
            external_ref=entity.external_ref,
            idempotency_key=entity.idempotency_key,
            amount_minor=entity.amount.minor,
            refunded_minor=entity.refunded_amount.minor,
            currency=entity.currency,
            state=entity.state.value,
            needs_reconciliation=entity.needs_reconciliation,
            reconciliation_causes=format_causes(entity.reconciliation_causes),
            failure_reason=entity.failure_reason,
            version=entity.version,
            created_at=entity.created_at,
            updated_at=entity.updated_at,
            captured_at=entity.captured_at,
        )

    async def _one(self, query) -> Optional[Payment]:
        result = await self.session.execute(query.execution_options(populate_existing=True))
        db_payment = result.scalar_one_or_none()
        return self._to_entity(db_payment) if db_payment else None

    async def create(self, payment: Payment) -> Payment:
        """创建支付记录"""
        db_payment = self._to_model(payment)
        self.session.add(db_payment)
        try:
            await self.session.flush()
        except IntegrityError as e:
            logger.warning(
                "payment_create_conflict",
                order_id=payment.order_id,
                idempotency_key=payment.idempotency_key,
                error=str(e.orig),
            )
            raise ConcurrentUpdateException("payment", payment.idempotency_key) from e
        logger.info(
            "payment_created",
            payment_id=db_payment.id,
            order_id=db_payment.order_id,
            processor=db_payment.processor,
            amount=db_payment.amount_minor,
        )
        return self._to_entity(db_payment)

    async def get_by_id(self, payment_id: int) -> Optional[Payment]:
        """根据ID获取支付"""
        return await self._one(select(PaymentModel).where(PaymentModel.id == payment_id))

    async def get_by_idempotency_key(self, order_id: int, idempotency_key: str) -> Optional[Payment]:
        return await self._one(
            select(PaymentModel).where(
                PaymentModel.order_id == order_id,
                PaymentModel.idempotency_key == idempotency_key,
            )
        )

    async def get_by_external_ref(self, processor: str, external_ref: str) -> Optional[Payment]:
        """根据处理器与网关引用ID获取支付"""
        return await self._one(
            select(PaymentModel).where(
                PaymentModel.processor == processor,
                PaymentModel.external_ref == external_ref,
            )
        )

    async def list_by_order(self, order_id: int) -> List[Payment]:
        result = await self.session.execute(
            select(PaymentModel)
            .where(PaymentModel.order_id == order_id)
            .order_by(PaymentModel.id)
            .execution_options(populate_existing=True)
        )
        return [self._to_entity(p) for p in result.scalars().all()]

    async def list_needing_reconciliation(self, limit: int = 100, after_id: int = 0) -> List[Payment]:
        result = await self.session.execute(
            select(PaymentModel)
            .where(
                PaymentModel.needs_reconciliation.is_(True),
                # conflict-only payments wait for an operator
                PaymentModel.reconciliation_causes != ReconciliationCause.CONFLICT.value,
                PaymentModel.id > after_id,
            )
            .order_by(PaymentModel.id)
            .limit(limit)
        )
        return [self._to_entity(p) for p in result.scalars().all()]

    async def update(self, payment: Payment) -> Payment:
        """乐观锁更新支付记录"""
        result = await self.session.execute(
            update(PaymentModel)
            .where(PaymentModel.id == payment.id, PaymentModel.version == payment.version)
            .values(
                external_ref=payment.external_ref,
                state=payment.state.value,
                refunded_minor=payment.refunded_amount.minor,
                needs_reconciliation=payment.needs_reconciliation,
                reconciliation_causes=format_causes(payment.reconciliation_causes),
                failure_reason=payment.failure_reason,
                updated_at=payment.updated_at,
                captured_at=payment.captured_at,
                version=payment.version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            logger.info("payment_update_conflict", payment_id=payment.id, version=payment.version)
            raise ConcurrentUpdateException("payment", payment.id)
        payment.version += 1

        logger.info(
            "payment_updated",
            payment_id=payment.id,
            order_id=payment.order_id,
            state=payment.state.value,
        )
        return payment


class SQLAlchemyCallbackRepository(CallbackRepository):
    """回调记录仓储的SQLAlchemy实现"""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: CallbackRecordModel) -> CallbackRecord:
        amount = None
        if model.amount_minor is not None and model.currency:
            amount = Money(int(model.amount_minor), model.currency)
        return CallbackRecord(
            id=model.id,
            gateway=model.gateway,
            source=CallbackSource(model.source),
            outcome=CallbackOutcome(model.outcome),
            payload=model.payload,
            signature_valid=bool(model.signature_valid),
            external_ref=model.external_ref,
            event_type=model.event_type,
            event_key=model.event_key,
            payment_id=model.payment_id,
            amount=amount,
            reason=model.reason,
            dedup_key=model.dedup_key,
            received_at=model.received_at,
        )

    async def add(self, record: CallbackRecord) -> CallbackRecord:
        db_record = CallbackRecordModel(
            gateway=record.gateway,
            source=record.source.value,
            payload=record.payload,
            signature_valid=record.signature_valid,
            external_ref=record.external_ref,
            event_type=record.event_type,
            event_key=record.event_key,
            payment_id=record.payment_id,
            amount_minor=record.amount.minor if record.amount else None,
            currency=record.amount.currency if record.amount else None,
            outcome=record.outcome.value,
            reason=record.reason,
            dedup_key=record.dedup_key,
            received_at=record.received_at,
        )
        self.session.add(db_record)
        try:
            await self.session.flush()
        except IntegrityError as e:
            # another transaction recorded the same applied event first
            raise ConcurrentUpdateException("callback", record.dedup_key) from e
        record.id = db_record.id
        return record

    async def get_applied(self, dedup_key: str) -> Optional[CallbackRecord]:
        result = await self.session.execute(
            select(CallbackRecordModel).where(CallbackRecordModel.dedup_key == dedup_key)
        )
        db_record = result.scalar_one_or_none()
        return self._to_entity(db_record) if db_record else None

    async def list_applied_financial(self, limit: int = 100, after_id: int = 0) -> List[CallbackRecord]:
        """已应用的扣款/退款事件中，尚无对应收据的记录"""
        receipt_exists = (
            select(ReceiptModel.id)
            .where(
                ReceiptModel.payment_id == CallbackRecordModel.payment_id,
                ReceiptModel.event_key == CallbackRecordModel.event_key,
            )
            .exists()
        )
        result = await self.session.execute(
            select(CallbackRecordModel)
            .where(
                CallbackRecordModel.outcome == CallbackOutcome.APPLIED.value,
                CallbackRecordModel.event_type.in_([t.value for t in FINANCIAL_EVENT_TYPES]),
                CallbackRecordModel.payment_id.is_not(None),
                CallbackRecordModel.id > after_id,
                ~receipt_exists,
            )
            .order_by(CallbackRecordModel.id)
            .limit(limit)
        )
        return [self._to_entity(r) for r in result.scalars().all()]

    async def list_unresolved_deferred(self, payment_id: int) -> List[CallbackRecord]:
        """暂存事件之后若已有同一语义事件的处理记录（applied/rejected/...），视为已解决"""
        later = aliased(CallbackRecordModel)
        resolved = (
            select(later.id)
            .where(
                later.gateway == CallbackRecordModel.gateway,
                later.external_ref == CallbackRecordModel.external_ref,
                later.event_key == CallbackRecordModel.event_key,
                later.id > CallbackRecordModel.id,
                later.outcome != CallbackOutcome.DEFERRED.value,
            )
            .exists()
        )
        result = await self.session.execute(
            select(CallbackRecordModel)
            .where(
                CallbackRecordModel.payment_id == payment_id,
                CallbackRecordModel.outcome == CallbackOutcome.DEFERRED.value,
                ~resolved,
            )
            .order_by(CallbackRecordModel.id)
        )
        return [self._to_entity(r) for r in result.scalars().all()]

    async def list_by_payment(self, payment_id: int) -> List[CallbackRecord]:
        result = await self.session.execute(
            select(CallbackRecordModel)
            .where(CallbackRecordModel.payment_id == payment_id)
            .order_by(CallbackRecordModel.id)
        )
        return [self._to_entity(r) for r in result.scalars().all()]


class SQLAlchemyRefundRequestRepository(RefundRequestRepository):
    """退款请求仓储的SQLAlchemy实现"""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: RefundRequestModel) -> RefundRequestRecord:
        return RefundRequestRecord(
            id=model.id,
            payment_id=model.payment_id,
            refund_key=model.refund_key,
            amount=Money(int(model.amount_minor), model.currency),
            status=RefundStatus(model.status),
            refund_ref=model.refund_ref,
            reason=model.reason,
            version=model.version,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )

    async def _one(self, query) -> Optional[RefundRequestRecord]:
        result = await self.session.execute(query.execution_options(populate_existing=True))
        db_refund = result.scalar_one_or_none()
        return self._to_entity(db_refund) if db_refund else None

    async def add(self, refund: RefundRequestRecord) -> RefundRequestRecord:
        db_refund = RefundRequestModel(
            payment_id=refund.payment_id,
            refund_key=refund.refund_key,
            amount_minor=refund.amount.minor,
            currency=refund.amount.currency,
            status=refund.status.value,
            refund_ref=refund.refund_ref,
            reason=refund.reason,
            version=refund.version,
            created_at=refund.created_at,
            updated_at=refund.updated_at,
        )
        self.session.add(db_refund)
        try:
            await self.session.flush()
        except IntegrityError as e:
            logger.info("refund_request_conflict", payment_id=refund.payment_id, refund_key=refund.refund_key)
            raise ConcurrentUpdateException("refund", refund.refund_key) from e
        refund.id = db_refund.id
        return refund

    async def get(self, payment_id: int, refund_key: str) -> Optional[RefundRequestRecord]:
        return await self._one(
            select(RefundRequestModel).where(
                RefundRequestModel.payment_id == payment_id,
                RefundRequestModel.refund_key == refund_key,
            )
        )

    async def get_by_ref(self, payment_id: int, refund_ref: str) -> Optional[RefundRequestRecord]:
        return await self._one(
            select(RefundRequestModel).where(
                RefundRequestModel.payment_id == payment_id,
                RefundRequestModel.refund_ref == refund_ref,
            )
        )

    async def list_unknown(self, payment_id: int) -> List[RefundRequestRecord]:
        result = await self.session.execute(
            select(RefundRequestModel)
            .where(
                RefundRequestModel.payment_id == payment_id,
                RefundRequestModel.status == RefundStatus.UNKNOWN.value,
            )
            .order_by(RefundRequestModel.id)
        )
        return [self._to_entity(r) for r in result.scalars().all()]

    async def update(self, refund: RefundRequestRecord) -> RefundRequestRecord:
        result = await self.session.execute(
            update(RefundRequestModel)
            .where(RefundRequestModel.id == refund.id, RefundRequestModel.version == refund.version)
            .values(
                status=refund.status.value,
                refund_ref=refund.refund_ref,
                reason=refund.reason,
                updated_at=refund.updated_at,
                version=refund.version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            logger.info("refund_request_update_conflict", refund_id=refund.id, version=refund.version)
            raise ConcurrentUpdateException("refund", refund.id)
        refund.version += 1
        logger.info("refund_request_updated", refund_id=refund.id, payment_id=refund.payment_id, status=refund.status.value)
        return refund
