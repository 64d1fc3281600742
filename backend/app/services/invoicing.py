from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from app.core.config import settings
from app.core.exceptions import ConflictError, NotFoundError, ValidationError
from app.core.logging_setup import logger
from app.db.transaction import atomic
from app.models.billing import (
    DiscountCode,
    DiscountType,
    Invoice,
    InvoiceLineItem,
    InvoiceStatus,
    LineItemKind,
    PlanChangeType,
    Subscription,
    SubscriptionChangeRecord,
    SubscriptionPlan,
)
from app.models.pricing import PricingRule, PricingRuleType
from app.models.usage import UsageBillingStatus, UsageRecord
from app.schemas.billing import DiscountCodeCreate
from app.services.pricing import (
    PricingRuleService,
    complexity_factor,
    cycle_price,
    evaluate_rule,
    parse_config,
)
from app.utils.clock import Clock, IdGenerator, SystemClock, Uuid4Generator
from app.utils.money import ZERO, quantize2, to_decimal

NUMBER_ATTEMPTS = 5


def period_key(subscription_id: UUID, period_start: datetime, period_end: datetime) -> str:
    return f"{subscription_id}:{period_start.isoformat()}:{period_end.isoformat()}"


@dataclass
class _Line:
    description: str
    kind: LineItemKind
    quantity: int
    unit_price: Decimal
    pricing_rule_id: UUID | None = None
    change_record_id: UUID | None = None
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def amount(self) -> Decimal:
        return quantize2(self.quantity * self.unit_price)


class DiscountCodeService:
    def __init__(self, session: Session, clock: Clock | None = None) -> None:
        self.session = session
        self.clock = clock or SystemClock()

    def create(self, payload: DiscountCodeCreate) -> DiscountCode:
        if payload.discount_type == DiscountType.PERCENTAGE and payload.value > 100:
            raise ValidationError("Percentage discounts cannot exceed 100", {"value": str(payload.value)})
        if payload.valid_from and payload.valid_until and payload.valid_until <= payload.valid_from:
            raise ValidationError("Discount validity window is empty")
        discount = DiscountCode(
            code=payload.code.strip().upper(),
            discount_type=payload.discount_type,
            value=payload.value,
            valid_from=payload.valid_from or self.clock.now(),
            valid_until=payload.valid_until,
            usage_limit=payload.usage_limit,
        )
        with atomic(self.session, "create_discount_code"):
            self.session.add(discount)
            try:
                self.session.flush()
            except IntegrityError as exc:
                raise ConflictError("Discount code already exists", {"code": discount.code}) from exc
        self.session.refresh(discount)
        logger.info("Cupom criado: %s", discount.code)
        return discount

    def get(self, code: str) -> DiscountCode:
        discount = self.session.exec(select(DiscountCode).where(DiscountCode.code == code.strip().upper())).first()
        if not discount:
            raise NotFoundError("Discount code not found", {"code": code})
        return discount

    def validate(self, code: str, at: datetime | None = None) -> DiscountCode:
        """Return the code if it can be applied right now, else ``ValidationError``."""
        at = at or self.clock.now()
        discount = self.session.exec(select(DiscountCode).where(DiscountCode.code == code.strip().upper())).first()
        if not discount or not discount.is_active:
            raise ValidationError("Invalid discount code", {"code": code})
        if at < discount.valid_from or (discount.valid_until is not None and at > discount.valid_until):
            raise ValidationError("Discount code is expired or not yet valid", {"code": discount.code})
        if discount.usage_limit is not None and discount.used_count >= discount.usage_limit:
            raise ValidationError("Discount code usage limit reached", {"code": discount.code})
        return discount

    def deactivate(self, code: str) -> DiscountCode:
        discount = self.get(code)
        with atomic(self.session, "deactivate_discount_code"):
            discount.is_active = False
            self.session.add(discount)
        self.session.refresh(discount)
        return discount


def discount_amount(discount: DiscountCode, subtotal: Decimal) -> Decimal:
    if discount.discount_type == DiscountType.PERCENTAGE:
        raw = quantize2(subtotal * to_decimal(discount.value) / Decimal("100"))
    else:
        raw = quantize2(discount.value)
    return min(raw, subtotal)


class InvoiceGenerator:
    """Turns a billing period into an invoice.

    Line items: the plan's cycle price, any upgrade proration not yet charged,
    then one item per active pricing rule with a non-zero amount over the
    period's unbilled usage. Every item satisfies
    ``amount == quantize2(quantity * unit_price)`` and the subtotal is their sum.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        id_generator: IdGenerator | None = None,
    ) -> None:
        self.session = session
        self.clock = clock or SystemClock()
        self.id_generator = id_generator or Uuid4Generator()
        self.discounts = DiscountCodeService(session, clock=self.clock)

    # -- lookups -------------------------------------------------------------

    def get_invoice(self, invoice_id: UUID) -> Invoice:
        invoice = self.session.get(Invoice, invoice_id)
        if not invoice:
            raise NotFoundError("Invoice not found", {"invoice_id": str(invoice_id)})
        return invoice

    def get_line_items(self, invoice_id: UUID) -> list[InvoiceLineItem]:
        return list(
            self.session.exec(
                select(InvoiceLineItem)
                .where(InvoiceLineItem.invoice_id == invoice_id)
                .order_by(InvoiceLineItem.line_number)
            ).all()
        )

    def list_invoices(self, subscription_id: UUID | None = None, status: InvoiceStatus | None = None) -> list[Invoice]:
        statement = select(Invoice)
        if subscription_id is not None:
            statement = statement.where(Invoice.subscription_id == subscription_id)
        if status is not None:
            statement = statement.where(Invoice.status == status)
        return list(self.session.exec(statement.order_by(Invoice.period_start.desc())).all())

    # -- building blocks -----------------------------------------------------

    def _next_number(self, issued_at: datetime) -> str:
        prefix = f"{settings.billing_invoice_number_prefix}-{issued_at:%Y%m}-"
        last = self.session.exec(
            select(func.max(Invoice.number)).where(Invoice.number.like(f"{prefix}%"))
        ).first()
        sequence = int(last.rsplit("-", 1)[-1]) + 1 if last else 1
        return f"{prefix}{sequence:05d}"

    def _insert_numbered(self, invoice: Invoice, issued_at: datetime) -> None:
        for attempt in range(1, NUMBER_ATTEMPTS + 1):
            invoice.number = self._next_number(issued_at)
            try:
                with self.session.begin_nested():
                    self.session.add(invoice)
                    self.session.flush()
                return
            except IntegrityError as exc:
                if self.session.exec(select(Invoice.id).where(Invoice.period_key == invoice.period_key)).first():
                    raise ConflictError(
                        "Invoice already exists for this period",
                        {
                            "subscription_id": str(invoice.subscription_id),
                            "period_start": invoice.period_start.isoformat(),
                        },
                    ) from exc
                logger.warning("Numero de fatura %s ja utilizado (tentativa %s)", invoice.number, attempt)
        raise ConflictError("Invoice number could not be allocated", {"number": invoice.number})

    def _proration_lines(self, subscription: Subscription, period_end: datetime) -> list[_Line]:
        charged = select(InvoiceLineItem.change_record_id).join(Invoice, Invoice.id == InvoiceLineItem.invoice_id).where(
            InvoiceLineItem.change_record_id.is_not(None), Invoice.status != InvoiceStatus.CANCELLED
        )
        reverted = select(SubscriptionChangeRecord.reverts_change_id).where(
            SubscriptionChangeRecord.subscription_id == subscription.id,
            SubscriptionChangeRecord.reverts_change_id.is_not(None),
        )
        changes = self.session.exec(
            select(SubscriptionChangeRecord)
            .where(SubscriptionChangeRecord.subscription_id == subscription.id)
            .where(SubscriptionChangeRecord.change_type == PlanChangeType.UPGRADE)
            .where(SubscriptionChangeRecord.proration_amount > 0)
            .where(SubscriptionChangeRecord.effective_at < period_end)
            .where(SubscriptionChangeRecord.id.not_in(charged))
            .where(SubscriptionChangeRecord.id.not_in(reverted))
            .order_by(SubscriptionChangeRecord.effective_at)
        ).all()
        return [
            _Line(
                description=f"Proration adjustment ({change.effective_at:%Y-%m-%d})",
                kind=LineItemKind.PRORATION,
                quantity=1,
                unit_price=quantize2(change.proration_amount),
                change_record_id=change.id,
                details={"from_plan_id": str(change.from_plan_id), "to_plan_id": str(change.to_plan_id)},
            )
            for change in changes
        ]

    def _rule_lines(
        self,
        rule: PricingRule,
        usage: dict[tuple[UUID, str | None], int],
        basis: Decimal,
    ) -> list[_Line]:
        in_scope: dict[str | None, int] = defaultdict(int)
        for (entity_id, complexity), units in usage.items():
            if rule.entity_id is None or rule.entity_id == entity_id:
                in_scope[complexity] += units
        total_units = sum(in_scope.values())
        rule_type = PricingRuleType(rule.rule_type)
        config = parse_config(rule_type, rule.configuration)

        # Amounts always come from evaluate_rule (rounded once); the line carries
        # quantity 1 and the unit rate stays in details.
        if rule_type == PricingRuleType.MULTIPLIER:
            lines = []
            for complexity in sorted(in_scope, key=lambda c: c or ""):
                units = in_scope[complexity]
                amount = evaluate_rule(rule, units, complexity=complexity)
                if amount <= 0:
                    continue
                factor = complexity_factor(rule.multipliers or [], complexity)
                lines.append(
                    _Line(
                        f"{rule.name} ({complexity or 'standard'}, {units} units)",
                        LineItemKind.USAGE,
                        1,
                        amount,
                        rule.id,
                        details={
                            "units": units,
                            "complexity": complexity,
                            "factor": str(factor),
                            "unit_rate": str(config.base_unit_price * factor),
                        },
                    )
                )
            return lines

        amount = evaluate_rule(rule, total_units, basis=basis)
        if amount <= 0:
            return []
        description = rule.name if rule_type == PricingRuleType.FLAT else f"{rule.name} ({total_units} units)"
        details: dict[str, Any] = {"units": total_units, "rule_type": rule_type.value}
        if rule_type == PricingRuleType.PER_UNIT:
            details["unit_rate"] = str(config.unit_price)
        return [
            _Line(
                description,
                LineItemKind.USAGE,
                1,
                amount,
                rule.id,
                details=details,
            )
        ]

    # -- generation ----------------------------------------------------------

    def generate_invoice(
        self,
        subscription_id: UUID,
        period_start: datetime,
        period_end: datetime,
        discount_code: str | None = None,
        finalize: bool = False,
    ) -> Invoice:
        if period_end <= period_start:
            raise ValidationError("Period end must be after period start")
        subscription = self.session.get(Subscription, subscription_id)
        if not subscription:
            raise NotFoundError("Subscription not found", {"subscription_id": str(subscription_id)})
        plan = self.session.get(SubscriptionPlan, subscription.plan_id)
        if not plan:
            raise NotFoundError("Subscription plan not found", {"plan_id": str(subscription.plan_id)})

        key = period_key(subscription.id, period_start, period_end)
        if self.session.exec(select(Invoice.id).where(Invoice.period_key == key)).first():
            raise ConflictError(
                "Invoice already exists for this period",
                {"subscription_id": str(subscription.id), "period_start": period_start.isoformat()},
            )
        discount = self.discounts.validate(discount_code) if discount_code else None

        now = self.clock.now()
        base_price = cycle_price(plan, subscription.billing_cycle)
        lines = [
            _Line(
                f"{plan.name} - Base Fee ({subscription.billing_cycle.value})",
                LineItemKind.BASE_FEE,
                1,
                base_price,
                details={"plan_id": str(plan.id)},
            )
        ]
        lines.extend(self._proration_lines(subscription, period_end))

        records = self.session.exec(
            select(UsageRecord)
            .where(UsageRecord.subscription_id == subscription.id)
            .where(UsageRecord.billing_status == UsageBillingStatus.UNBILLED)
            .where(UsageRecord.recorded_at >= period_start)
            .where(UsageRecord.recorded_at < period_end)
        ).all()
        usage: dict[tuple[UUID, str | None], int] = defaultdict(int)
        for record in records:
            usage[(record.entity_id, (record.complexity or "").strip().lower() or None)] += record.units

        rules = PricingRuleService(self.session).list_rules(plan_id=plan.id)
        for rule in rules:
            lines.extend(self._rule_lines(rule, usage, base_price))
        unscoped = any(rule.entity_id is None for rule in rules)
        rule_entities = {rule.entity_id for rule in rules}
        consumed = [r.id for r in records if unscoped or r.entity_id in rule_entities]

        subtotal = quantize2(sum((line.amount for line in lines), ZERO))
        discount_total = discount_amount(discount, subtotal) if discount else ZERO
        tax = quantize2(subtotal * to_decimal(settings.billing_tax_rate))
        invoice = Invoice(
            id=self.id_generator.new_id(),
            tenant_id=subscription.tenant_id,
            subscription_id=subscription.id,
            period_start=period_start,
            period_end=period_end,
            subtotal=subtotal,
            tax_amount=tax,
            discount_amount=discount_total,
            total=quantize2(subtotal + tax - discount_total),
            status=InvoiceStatus.SENT if finalize else InvoiceStatus.DRAFT,
            discount_code=discount.code if discount else None,
            due_date=now + timedelta(days=settings.billing_invoice_due_days),
            sent_at=now if finalize else None,
            period_key=key,
            created_at=now,
        )

        with atomic(self.session, "generate_invoice"):
            self._insert_numbered(invoice, now)
            for number, line in enumerate(lines, start=1):
                self.session.add(
                    InvoiceLineItem(
                        id=self.id_generator.new_id(),
                        invoice_id=invoice.id,
                        line_number=number,
                        description=line.description,
                        kind=line.kind,
                        pricing_rule_id=line.pricing_rule_id,
                        change_record_id=line.change_record_id,
                        quantity=line.quantity,
                        unit_price=line.unit_price,
                        amount=line.amount,
                        details=line.details,
                        created_at=now,
                    )
                )
            if consumed:
                self.session.execute(
                    update(UsageRecord)
                    .where(UsageRecord.id.in_(consumed))
                    .where(UsageRecord.billing_status == UsageBillingStatus.UNBILLED)
                    .values(
                        billing_status=UsageBillingStatus.INVOICED if finalize else UsageBillingStatus.BILLED,
                        invoice_id=invoice.id,
                    )
                    .execution_options(synchronize_session=False)
                )
            if discount:
                self._consume_discount(discount)
        self.session.refresh(invoice)
        logger.info(
            "Fatura %s gerada para assinatura %s: total %s %s (%d itens)",
            invoice.number,
            subscription.id,
            invoice.total,
            settings.billing_currency,
            len(lines),
        )
        return invoice

    def _consume_discount(self, discount: DiscountCode) -> None:
        statement = update(DiscountCode).where(DiscountCode.id == discount.id)
        if discount.usage_limit is not None:
            statement = statement.where(DiscountCode.used_count < discount.usage_limit)
        result = self.session.execute(
            statement.values(used_count=DiscountCode.used_count + 1).execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ValidationError("Discount code usage limit reached", {"code": discount.code})

    # -- status transitions --------------------------------------------------

    def finalize_invoice(self, invoice_id: UUID) -> Invoice:
        invoice = self.get_invoice(invoice_id)
        if invoice.status != InvoiceStatus.DRAFT:
            raise ConflictError("Only draft invoices can be finalized", {"status": invoice.status.value})
        with atomic(self.session, "finalize_invoice"):
            invoice.status = InvoiceStatus.SENT
            invoice.sent_at = self.clock.now()
            self.session.add(invoice)
            self.session.execute(
                update(UsageRecord)
                .where(UsageRecord.invoice_id == invoice.id)
                .where(UsageRecord.billing_status == UsageBillingStatus.BILLED)
                .values(billing_status=UsageBillingStatus.INVOICED)
                .execution_options(synchronize_session=False)
            )
        self.session.refresh(invoice)
        logger.info("Fatura %s enviada", invoice.number)
        return invoice

    def mark_paid(self, invoice_id: UUID) -> Invoice:
        invoice = self.get_invoice(invoice_id)
        if invoice.status not in (InvoiceStatus.SENT, InvoiceStatus.OVERDUE):
            raise ConflictError("Invoice cannot be paid in its current status", {"status": invoice.status.value})
        with atomic(self.session, "mark_invoice_paid"):
            invoice.status = InvoiceStatus.PAID
            invoice.paid_at = self.clock.now()
            self.session.add(invoice)
        self.session.refresh(invoice)
        logger.info("Fatura %s paga", invoice.number)
        return invoice

    def mark_overdue(self, now: datetime | None = None) -> int:
        now = now or self.clock.now()
        with atomic(self.session, "mark_invoices_overdue"):
            result = self.session.execute(
                update(Invoice)
                .where(Invoice.status == InvoiceStatus.SENT)
                .where(Invoice.due_date < now)
                .values(status=InvoiceStatus.OVERDUE, updated_at=now)
                .execution_options(synchronize_session=False)
            )
        if result.rowcount:
            logger.warning("%d faturas marcadas como vencidas", result.rowcount)
        return result.rowcount

    def cancel_invoice(self, invoice_id: UUID) -> Invoice:
        invoice = self.get_invoice(invoice_id)
        if invoice.status in (InvoiceStatus.PAID, InvoiceStatus.CANCELLED):
            raise ConflictError("Invoice cannot be cancelled in its current status", {"status": invoice.status.value})
        with atomic(self.session, "cancel_invoice"):
            invoice.status = InvoiceStatus.CANCELLED
            invoice.cancelled_at = self.clock.now()
            invoice.period_key = None
            self.session.add(invoice)
            if invoice.discount_code:
                self.session.execute(
                    update(DiscountCode)
                    .where(DiscountCode.code == invoice.discount_code)
                    .where(DiscountCode.used_count > 0)
                    .values(used_count=DiscountCode.used_count - 1)
                    .execution_options(synchronize_session=False)
                )
        self.session.refresh(invoice)
        logger.info("Fatura %s cancelada", invoice.number)
        return invoice
