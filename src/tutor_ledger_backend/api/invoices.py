'''
API endpoints for the invoice lifecycle and post-payment adjustments.
'''
from typing import Annotated, Any
from uuid import UUID
from fastapi import APIRouter, Depends, status, Query

from ..database.db_enums import ActorRole, InvoiceStatusEnum
from ..models import invoice as invoice_models
from ..models.token import Actor
from ..services.security import verify_token_and_get_actor, authorize_role
from ..services.invoice_service import InvoiceService
from ..services.adjustment_service import AdjustmentService

FINANCE_ROLES = [ActorRole.ADMIN, ActorRole.SYSTEM]


class InvoicesAPI:
    """
    A class to encapsulate endpoints for Invoices.
    """
    def __init__(self):
        self.router = APIRouter(
            prefix="/invoices",
            tags=["Invoices"]
        )
        self._register_routes()

    def _register_routes(self):
        """Registers all the API routes for this class."""
        self.router.add_api_route(
                "/",
                self.list_invoices,
                methods=["GET"],
                response_model=list[invoice_models.InvoiceRead])
        self.router.add_api_route(
                "/generate",
                self.generate_invoice,
                methods=["POST"],
                status_code=status.HTTP_201_CREATED,
                response_model=invoice_models.InvoiceRead)
        self.router.add_api_route(
                "/{invoice_id}",
                self.get_invoice,
                methods=["GET"],
                response_model=invoice_models.InvoiceRead)
        self.router.add_api_route(
                "/{invoice_id}/publish",
                self.publish_invoice,
                methods=["POST"],
                response_model=invoice_models.InvoiceRead)
        self.router.add_api_route(
                "/{invoice_id}/refresh-financials",
                self.refresh_draft_financials,
                methods=["POST"],
                response_model=invoice_models.InvoiceRead)
        self.router.add_api_route(
                "/{invoice_id}/payments",
                self.apply_payment,
                methods=["POST"],
                response_model=invoice_models.InvoiceRead)
        self.router.add_api_route(
                "/{invoice_id}/items",
                self.update_items,
                methods=["PATCH"],
                response_model=invoice_models.InvoiceRead)
        self.router.add_api_route(
                "/{invoice_id}/adjustments",
                self.apply_adjustment,
                methods=["POST"],
                response_model=invoice_models.InvoiceRead)
        self.router.add_api_route(
                "/{invoice_id}/cancel",
                self.cancel_invoice,
                methods=["POST"],
                response_model=invoice_models.InvoiceRead)

    async def list_invoices(
        self,
        actor: Annotated[Actor, Depends(verify_token_and_get_actor)],
        invoice_service: Annotated[InvoiceService, Depends(InvoiceService)],
        guardian_id: Annotated[UUID | None, Query(description="Optional filter for Guardian ID")] = None,
        invoice_status: Annotated[InvoiceStatusEnum | None, Query(alias="status")] = None
    ) -> list[Any]:
        authorize_role(actor, FINANCE_ROLES)
        invoices = await invoice_service.list_invoices(guardian_id=guardian_id, status=invoice_status)
        return [invoice_models.InvoiceRead.from_orm_invoice(i) for i in invoices]

    async def generate_invoice(
        self,
        data: invoice_models.GenerateInvoiceInput,
        actor: Annotated[Actor, Depends(verify_token_and_get_actor)],
        invoice_service: Annotated[InvoiceService, Depends(InvoiceService)]
    ) -> Any:
        """
        Creates a draft invoice from the guardian's unbilled classes.
        """
        authorize_role(actor, FINANCE_ROLES)
        invoice = await invoice_service.generate_invoice(data, actor)
        return invoice_models.InvoiceRead.from_orm_invoice(invoice)

    async def get_invoice(
        self,
        invoice_id: UUID,
        actor: Annotated[Actor, Depends(verify_token_and_get_actor)],
        invoice_service: Annotated[InvoiceService, Depends(InvoiceService)]
    ) -> Any:
        authorize_role(actor, FINANCE_ROLES)
        invoice = await invoice_service.get_invoice(invoice_id)
        return invoice_models.InvoiceRead.from_orm_invoice(invoice)

    async def publish_invoice(
        self,
        invoice_id: UUID,
        actor: Annotated[Actor, Depends(verify_token_and_get_actor)],
        invoice_service: Annotated[InvoiceService, Depends(InvoiceService)]
    ) -> Any:
        """
        Freezes the financial snapshot and sends the invoice.
        """
        authorize_role(actor, FINANCE_ROLES)
        invoice = await invoice_service.publish_invoice(invoice_id, actor)
        return invoice_models.InvoiceRead.from_orm_invoice(invoice)

    async def refresh_draft_financials(
        self,
        invoice_id: UUID,
        actor: Annotated[Actor, Depends(verify_token_and_get_actor)],
        invoice_service: Annotated[InvoiceService, Depends(InvoiceService)]
    ) -> Any:
        authorize_role(actor, FINANCE_ROLES)
        invoice = await invoice_service.refresh_draft_financials(invoice_id, actor)
        return invoice_models.InvoiceRead.from_orm_invoice(invoice)

    async def apply_payment(
        self,
        invoice_id: UUID,
        data: invoice_models.PaymentInput,
        actor: Annotated[Actor, Depends(verify_token_and_get_actor)],
        invoice_service: Annotated[InvoiceService, Depends(InvoiceService)]
    ) -> Any:
        """
        Records a payment against the invoice and credits the guardian's hours.
        """
        authorize_role(actor, FINANCE_ROLES)
        invoice = await invoice_service.apply_payment(invoice_id, data, actor)
        return invoice_models.InvoiceRead.from_orm_invoice(invoice)

    async def update_items(
        self,
        invoice_id: UUID,
        data: invoice_models.ItemsUpdateInput,
        actor: Annotated[Actor, Depends(verify_token_and_get_actor)],
        invoice_service: Annotated[InvoiceService, Depends(InvoiceService)]
    ) -> Any:
        authorize_role(actor, FINANCE_ROLES)
        invoice = await invoice_service.update_invoice_items(invoice_id, data, actor)
        return invoice_models.InvoiceRead.from_orm_invoice(invoice)

    async def apply_adjustment(
        self,
        invoice_id: UUID,
        data: invoice_models.AdjustmentRequest,
        actor: Annotated[Actor, Depends(verify_token_and_get_actor)],
        adjustment_service: Annotated[AdjustmentService, Depends(AdjustmentService)]
    ) -> Any:
        """
        Applies a reduction or lesson removal to a paid invoice.
        """
        authorize_role(actor, [ActorRole.ADMIN])
        invoice = await adjustment_service.apply_post_payment_adjustment(invoice_id, data.adjustment, actor)
        return invoice_models.InvoiceRead.from_orm_invoice(invoice)

    async def cancel_invoice(
        self,
        invoice_id: UUID,
        actor: Annotated[Actor, Depends(verify_token_and_get_actor)],
        invoice_service: Annotated[InvoiceService, Depends(InvoiceService)],
        reason: Annotated[str | None, Query(max_length=500)] = None
    ) -> Any:
        authorize_role(actor, FINANCE_ROLES)
        invoice = await invoice_service.cancel_invoice(invoice_id, actor, reason)
        return invoice_models.InvoiceRead.from_orm_invoice(invoice)

# Instantiate the class and export its router
invoices_api = InvoicesAPI()
router = invoices_api.router
