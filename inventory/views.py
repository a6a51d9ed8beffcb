from datetime import datetime, time
from decimal import Decimal

from django.db import transaction
from django.db.models import Q, Sum
from django.utils import timezone
from django.utils.dateparse import parse_date, parse_datetime
from rest_framework import status, viewsets
from rest_framework.decorators import action
from rest_framework.exceptions import ValidationError
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response

from common.audit import create_audit_log_from_request
from common.exceptions import Conflict, error_response
from common.permissions import RoleCapabilityPermission
from inventory.exceptions import StockLedgerError
from inventory.models import Document, Product, StockLevel, StockMove, Warehouse
from inventory.serializers import (
    DocumentSerializer,
    ProductSerializer,
    StockLevelSerializer,
    StockMoveSerializer,
    WarehouseSerializer,
)
from inventory.services import validate_document

ADMIN_ACTIONS = ["list", "retrieve", "create", "update", "partial_update", "destroy"]

LEDGER_ERROR_STATUS = {
    "not_found": status.HTTP_404_NOT_FOUND,
    "already_validated": status.HTTP_409_CONFLICT,
    "document_canceled": status.HTTP_409_CONFLICT,
    "missing_warehouse": status.HTTP_400_BAD_REQUEST,
    "same_warehouse": status.HTTP_400_BAD_REQUEST,
    "insufficient_stock": status.HTTP_409_CONFLICT,
    "unknown_document_type": status.HTTP_400_BAD_REQUEST,
}


def _date_bound(params, name, *, end_of_day=False):
    """Read an ISO date or datetime query parameter as an aware datetime."""
    raw = params.get(name)
    if not raw:
        return None
    value = parse_datetime(raw)
    if value is None:
        day = parse_date(raw)
        if day is None:
            raise ValidationError({name: "Enter a valid ISO date or datetime."})
        value = datetime.combine(day, time.max if end_of_day else time.min)
    if timezone.is_naive(value):
        value = timezone.make_aware(value)
    return value


def _filter_by_period(qs, params, field):
    date_from = _date_bound(params, "date_from")
    date_to = _date_bound(params, "date_to", end_of_day=True)
    if date_from:
        qs = qs.filter(**{f"{field}__gte": date_from})
    if date_to:
        qs = qs.filter(**{f"{field}__lte": date_to})
    return qs


def _either_warehouse(warehouse_id):
    return Q(source_warehouse_id=warehouse_id) | Q(destination_warehouse_id=warehouse_id)


class AuditedMutationMixin:
    audit_entity = None

    def _audit(self, *, action, instance=None, entity_id=None, before_snapshot=None, after_snapshot=None):
        create_audit_log_from_request(
            self.request,
            action=action,
            entity=self.audit_entity,
            entity_id=entity_id or instance.id,
            before_snapshot=before_snapshot,
            after_snapshot=after_snapshot,
        )

    def perform_create(self, serializer):
        instance = serializer.save()
        self._audit(action=f"{self.audit_entity}.create", instance=instance, after_snapshot=self.get_serializer(instance).data)

    def perform_update(self, serializer):
        before_snapshot = self.get_serializer(serializer.instance).data
        instance = serializer.save()
        self._audit(action=f"{self.audit_entity}.update", instance=instance, before_snapshot=before_snapshot, after_snapshot=self.get_serializer(instance).data)

    def perform_destroy(self, instance):
        before_snapshot = self.get_serializer(instance).data
        entity_id = instance.id
        instance.delete()
        self._audit(action=f"{self.audit_entity}.delete", entity_id=entity_id, before_snapshot=before_snapshot)


def _stock_payload(levels):
    levels = list(levels)
    total = sum((level.quantity for level in levels), Decimal("0"))
    return {"total": str(total), "levels": StockLevelSerializer(levels, many=True).data}


class ProductViewSet(viewsets.ReadOnlyModelViewSet):
    queryset = Product.objects.order_by("sku")
    serializer_class = ProductSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"list": "inventory.view", "retrieve": "inventory.view", "stock": "inventory.view"}

    def get_queryset(self):
        qs = super().get_queryset()
        category = self.request.query_params.get("category")
        search = self.request.query_params.get("search")
        if category:
            qs = qs.filter(category=category)
        if search:
            qs = qs.filter(Q(sku__icontains=search) | Q(name__icontains=search))
        if self.request.query_params.get("include_inactive") not in {"1", "true"}:
            qs = qs.filter(is_active=True)
        return qs

    @action(detail=True, methods=["get"], url_path="stock")
    def stock(self, request, pk=None):
        product = self.get_object()
        levels = StockLevel.objects.filter(product=product).select_related("product", "warehouse").order_by("warehouse__code")
        return Response({"product": str(product.id), **_stock_payload(levels)})


class WarehouseViewSet(viewsets.ReadOnlyModelViewSet):
    queryset = Warehouse.objects.order_by("code")
    serializer_class = WarehouseSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"list": "inventory.view", "retrieve": "inventory.view", "stock": "inventory.view"}

    def get_queryset(self):
        qs = super().get_queryset()
        warehouse_status = self.request.query_params.get("status")
        if warehouse_status:
            qs = qs.filter(status=warehouse_status)
        return qs

    @action(detail=True, methods=["get"], url_path="stock")
    def stock(self, request, pk=None):
        warehouse = self.get_object()
        levels = StockLevel.objects.filter(warehouse=warehouse).select_related("product", "warehouse").order_by("product__sku")
        return Response({"warehouse": str(warehouse.id), **_stock_payload(levels)})


class AdminProductViewSet(AuditedMutationMixin, viewsets.ModelViewSet):
    queryset = Product.objects.order_by("sku")
    serializer_class = ProductSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {action: "admin.records.manage" for action in ADMIN_ACTIONS}
    audit_entity = "product"

    def perform_create(self, serializer):
        instance = serializer.save(created_by=self.request.user)
        self._audit(action="product.create", instance=instance, after_snapshot=self.get_serializer(instance).data)


class AdminWarehouseViewSet(AuditedMutationMixin, viewsets.ModelViewSet):
    queryset = Warehouse.objects.order_by("code")
    serializer_class = WarehouseSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {action: "admin.records.manage" for action in ADMIN_ACTIONS}
    audit_entity = "warehouse"


class DocumentViewSet(AuditedMutationMixin, viewsets.ModelViewSet):
    queryset = Document.objects.select_related(
        "source_warehouse",
        "destination_warehouse",
        "created_by",
        "validated_by",
    ).prefetch_related("lines__product")
    serializer_class = DocumentSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {
        "list": "inventory.view",
        "retrieve": "inventory.view",
        "create": "document.edit",
        "update": "document.edit",
        "partial_update": "document.edit",
        "cancel": "document.cancel",
        "validate": "document.validate",
    }
    http_method_names = ["get", "post", "put", "patch", "head", "options"]
    audit_entity = "document"

    def get_queryset(self):
        qs = super().get_queryset().order_by("-created_at")
        params = self.request.query_params

        doc_type = params.get("type")
        doc_status = params.get("status")
        warehouse_id = params.get("warehouse")
        product_id = params.get("product")

        if doc_type:
            qs = qs.filter(doc_type=doc_type.upper())
        if doc_status:
            qs = qs.filter(status=doc_status.upper())
        if warehouse_id:
            qs = qs.filter(_either_warehouse(warehouse_id))
        if product_id:
            qs = qs.filter(lines__product_id=product_id).distinct()
        return _filter_by_period(qs, params, "created_at")

    def _ensure_editable(self, document):
        if document.status == Document.Status.DONE:
            raise Conflict("Validated documents cannot be modified.", code="document_locked")
        if document.status == Document.Status.CANCELED:
            raise Conflict("Canceled documents cannot be modified.", code="document_canceled")

    def _lock_editable(self, document):
        """Re-read the document under a row lock and refuse it unless it is still editable."""
        locked = Document.objects.select_for_update().get(pk=document.pk)
        self._ensure_editable(locked)
        return locked

    def perform_create(self, serializer):
        instance = serializer.save(created_by=self.request.user)
        self._audit(action="document.create", instance=instance, after_snapshot=self.get_serializer(instance).data)

    def update(self, request, *args, **kwargs):
        partial = kwargs.pop("partial", False)
        document = self.get_object()
        with transaction.atomic():
            document = self._lock_editable(document)
            serializer = self.get_serializer(document, data=request.data, partial=partial)
            serializer.is_valid(raise_exception=True)
            self.perform_update(serializer)
        return Response(self.get_serializer(self.get_queryset().get(pk=document.pk)).data)

    @action(detail=True, methods=["post"], url_path="cancel")
    def cancel(self, request, pk=None):
        document = self.get_object()
        with transaction.atomic():
            document = self._lock_editable(document)
            before_snapshot = self.get_serializer(document).data
            canceled = Document.objects.filter(pk=document.pk, status__in=Document.EDITABLE_STATUSES).update(
                status=Document.Status.CANCELED,
                updated_at=timezone.now(),
            )
            if not canceled:
                self._ensure_editable(Document.objects.get(pk=document.pk))
            document.refresh_from_db()
            after_snapshot = self.get_serializer(document).data
            self._audit(action="document.cancel", instance=document, before_snapshot=before_snapshot, after_snapshot=after_snapshot)
        return Response(after_snapshot)

    @action(detail=True, methods=["post"], url_path="validate")
    def validate(self, request, pk=None):
        document = self.get_object()
        before_snapshot = self.get_serializer(document).data
        try:
            document = validate_document(document.id, request.user.id)
        except StockLedgerError as exc:
            return error_response(
                code=exc.code,
                message=exc.message,
                errors=exc.details(),
                status_code=LEDGER_ERROR_STATUS.get(exc.code, status.HTTP_400_BAD_REQUEST),
            )

        document = self.get_queryset().get(pk=document.pk)
        after_snapshot = self.get_serializer(document).data
        self._audit(action="document.validate", instance=document, before_snapshot=before_snapshot, after_snapshot=after_snapshot)
        return Response(after_snapshot)


class StockMoveViewSet(viewsets.ReadOnlyModelViewSet):
    queryset = StockMove.objects.select_related("document", "product", "executed_by")
    serializer_class = StockMoveSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"list": "inventory.view", "retrieve": "inventory.view"}

    def get_queryset(self):
        qs = super().get_queryset().order_by("-executed_at", "line_position")
        params = self.request.query_params

        warehouse_id = params.get("warehouse")
        product_id = params.get("product")
        document_type = params.get("document_type")
        document_id = params.get("document")

        if warehouse_id:
            qs = qs.filter(_either_warehouse(warehouse_id))
        if product_id:
            qs = qs.filter(product_id=product_id)
        if document_type:
            qs = qs.filter(document__doc_type=document_type.upper())
        if document_id:
            qs = qs.filter(document_id=document_id)
        return _filter_by_period(qs, params, "executed_at")


class StockLevelViewSet(viewsets.ReadOnlyModelViewSet):
    queryset = StockLevel.objects.select_related("product", "warehouse")
    serializer_class = StockLevelSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"list": "inventory.view", "retrieve": "inventory.view", "low": "inventory.view"}

    def get_queryset(self):
        qs = super().get_queryset().order_by("warehouse__code", "product__sku")
        product_id = self.request.query_params.get("product")
        warehouse_id = self.request.query_params.get("warehouse")
        if product_id:
            qs = qs.filter(product_id=product_id)
        if warehouse_id:
            qs = qs.filter(warehouse_id=warehouse_id)
        return qs

    @action(detail=False, methods=["get"], url_path="low")
    def low(self, request):
        """Products whose stock across all warehouses is at or below their reorder level."""
        totals = (
            Product.objects.filter(is_active=True)
            .annotate(on_hand=Sum("stock_levels__quantity", default=0))
            .order_by("sku")
        )
        rows = [
            {
                "product": str(product.id),
                "sku": product.sku,
                "name": product.name,
                "on_hand": str(product.on_hand),
                "reorder_level": str(product.reorder_level),
            }
            for product in totals
            if product.on_hand <= product.reorder_level
        ]
        return Response(rows)
