from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, status
from sqlmodel import Session

from app.api.deps import get_clock, get_db
from app.models.billing import Invoice, InvoiceStatus
from app.schemas.billing import (
    DiscountCodeCreate,
    DiscountCodeRead,
    InvoiceGenerateRequest,
    InvoiceRead,
    LineItemRead,
)
from app.services.invoicing import DiscountCodeService, InvoiceGenerator
from app.utils.clock import Clock

router = APIRouter(tags=["invoices"])


def _generator(session: Session, clock: Clock) -> InvoiceGenerator:
    return InvoiceGenerator(session, clock=clock)


def _invoice_read(generator: InvoiceGenerator, invoice: Invoice) -> InvoiceRead:
    read = InvoiceRead.model_validate(invoice)
    read.line_items = [LineItemRead.model_validate(item) for item in generator.get_line_items(invoice.id)]
    return read


@router.post("/invoices", response_model=InvoiceRead, status_code=status.HTTP_201_CREATED)
def generate_invoice(
    payload: InvoiceGenerateRequest,
    session: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> InvoiceRead:
    generator = _generator(session, clock)
    invoice = generator.generate_invoice(
        payload.subscription_id,
        payload.period_start,
        payload.period_end,
        discount_code=payload.discount_code,
        finalize=payload.finalize,
    )
    return _invoice_read(generator, invoice)


@router.get("/invoices", response_model=List[InvoiceRead])
def list_invoices(
    subscription_id: UUID | None = None,
    invoice_status: InvoiceStatus | None = None,
    session: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> List[InvoiceRead]:
    generator = _generator(session, clock)
    return [_invoice_read(generator, invoice) for invoice in generator.list_invoices(subscription_id, invoice_status)]


@router.get("/invoices/{invoice_id}", response_model=InvoiceRead)
def get_invoice(invoice_id: UUID, session: Session = Depends(get_db), clock: Clock = Depends(get_clock)) -> InvoiceRead:
    generator = _generator(session, clock)
    return _invoice_read(generator, generator.get_invoice(invoice_id))


@router.post("/invoices/{invoice_id}/finalize", response_model=InvoiceRead)
def finalize_invoice(
    invoice_id: UUID, session: Session = Depends(get_db), clock: Clock = Depends(get_clock)
) -> InvoiceRead:
    generator = _generator(session, clock)
    return _invoice_read(generator, generator.finalize_invoice(invoice_id))


@router.post("/invoices/{invoice_id}/pay", response_model=InvoiceRead)
def mark_paid(invoice_id: UUID, session: Session = Depends(get_db), clock: Clock = Depends(get_clock)) -> InvoiceRead:
    generator = _generator(session, clock)
    return _invoice_read(generator, generator.mark_paid(invoice_id))


@router.post("/invoices/{invoice_id}/cancel", response_model=InvoiceRead)
def cancel_invoice(
    invoice_id: UUID, session: Session = Depends(get_db), clock: Clock = Depends(get_clock)
) -> InvoiceRead:
    generator = _generator(session, clock)
    return _invoice_read(generator, generator.cancel_invoice(invoice_id))


@router.post("/discount-codes", response_model=DiscountCodeRead, status_code=status.HTTP_201_CREATED)
def create_discount_code(
    payload: DiscountCodeCreate, session: Session = Depends(get_db), clock: Clock = Depends(get_clock)
) -> DiscountCodeRead:
    return DiscountCodeRead.model_validate(DiscountCodeService(session, clock=clock).create(payload))


@router.get("/discount-codes/{code}", response_model=DiscountCodeRead)
def get_discount_code(
    code: str, session: Session = Depends(get_db), clock: Clock = Depends(get_clock)
) -> DiscountCodeRead:
    return DiscountCodeRead.model_validate(DiscountCodeService(session, clock=clock).get(code))
