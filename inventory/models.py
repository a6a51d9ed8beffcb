import uuid

from django.conf import settings
from django.core.exceptions import ValidationError
from django.core.validators import RegexValidator
from django.db import models
from django.utils import timezone


class Product(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    sku = models.CharField(max_length=64, unique=True)
    name = models.CharField(max_length=255)
    category = models.CharField(max_length=128, blank=True, default="")
    unit_of_measure = models.CharField(max_length=32, default="unit")
    reorder_level = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    is_active = models.BooleanField(default=True)
    created_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        related_name="created_products",
        null=True,
        blank=True,
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [
            models.Index(fields=["category"], name="product_category_idx"),
            models.Index(fields=["is_active"], name="product_active_idx"),
        ]

    def save(self, *args, **kwargs):
        if self.sku:
            self.sku = self.sku.strip().upper()
        super().save(*args, **kwargs)

    def __str__(self):
        return f"{self.sku} {self.name}"


phone_validator = RegexValidator(r"^[\d\s\-+()]+$", "Enter a valid phone number.")


class Warehouse(models.Model):
    class Kind(models.TextChoices):
        MAIN = "main", "Main"
        REGIONAL = "regional", "Regional"
        DISTRIBUTION = "distribution", "Distribution"
        STORAGE = "storage", "Storage"
        OTHER = "other", "Other"

    class Status(models.TextChoices):
        ACTIVE = "active", "Active"
        INACTIVE = "inactive", "Inactive"
        MAINTENANCE = "maintenance", "Maintenance"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    code = models.CharField(max_length=32, unique=True)
    name = models.CharField(max_length=255)
    address = models.CharField(max_length=255, blank=True, default="")
    contact_person = models.CharField(max_length=255, blank=True, default="")
    phone = models.CharField(max_length=64, blank=True, default="", validators=[phone_validator])
    email = models.EmailField(blank=True, default="")
    capacity = models.PositiveIntegerField(default=0)
    kind = models.CharField(max_length=16, choices=Kind, default=Kind.MAIN)
    status = models.CharField(max_length=16, choices=Status, default=Status.ACTIVE)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [
            models.Index(fields=["status"], name="warehouse_status_idx"),
        ]

    def save(self, *args, **kwargs):
        if self.code:
            self.code = self.code.strip().upper()
        super().save(*args, **kwargs)

    def __str__(self):
        return self.code


class Document(models.Model):
    class DocType(models.TextChoices):
        RECEIPT = "RECEIPT", "Receipt"
        DELIVERY = "DELIVERY", "Delivery"
        TRANSFER = "TRANSFER", "Transfer"
        ADJUSTMENT = "ADJUSTMENT", "Adjustment"

    class Status(models.TextChoices):
        DRAFT = "DRAFT", "Draft"
        WAITING = "WAITING", "Waiting"
        READY = "READY", "Ready"
        DONE = "DONE", "Done"
        CANCELED = "CANCELED", "Canceled"

    EDITABLE_STATUSES = (Status.DRAFT, Status.WAITING, Status.READY)

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    doc_type = models.CharField(max_length=16, choices=DocType)
    status = models.CharField(max_length=16, choices=Status, default=Status.DRAFT)
    source_warehouse = models.ForeignKey(
        Warehouse,
        on_delete=models.PROTECT,
        related_name="outgoing_documents",
        null=True,
        blank=True,
    )
    destination_warehouse = models.ForeignKey(
        Warehouse,
        on_delete=models.PROTECT,
        related_name="incoming_documents",
        null=True,
        blank=True,
    )
    counterparty = models.CharField(max_length=255, blank=True, default="")
    reason = models.CharField(max_length=255, blank=True, default="")
    proof_reference = models.CharField(max_length=255, blank=True, default="")
    created_by = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.PROTECT, related_name="created_documents")
    validated_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name="validated_documents",
        null=True,
        blank=True,
    )
    created_at = models.DateTimeField(default=timezone.now)
    validated_at = models.DateTimeField(null=True, blank=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [
            models.Index(fields=["doc_type", "status"], name="document_type_status_idx"),
            models.Index(fields=["created_by"], name="document_created_by_idx"),
            models.Index(fields=["source_warehouse"], name="document_source_idx"),
            models.Index(fields=["destination_warehouse"], name="document_destination_idx"),
            models.Index(fields=["-created_at"], name="document_created_desc_idx"),
        ]

    @property
    def is_editable(self):
        return self.status in self.EDITABLE_STATUSES

    def __str__(self):
        return f"{self.doc_type} {self.id} ({self.status})"


class DocumentLine(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    document = models.ForeignKey(Document, on_delete=models.CASCADE, related_name="lines")
    position = models.PositiveIntegerField()
    product = models.ForeignKey(Product, on_delete=models.PROTECT, related_name="document_lines")
    quantity = models.DecimalField(max_digits=12, decimal_places=2)

    class Meta:
        ordering = ["position"]
        constraints = [
            models.UniqueConstraint(fields=["document", "position"], name="uniq_document_line_position"),
            models.CheckConstraint(condition=models.Q(quantity__gte=0), name="document_line_quantity_non_negative"),
        ]
        indexes = [
            models.Index(fields=["product"], name="document_line_product_idx"),
        ]


class StockLevel(models.Model):
    """Current on-hand quantity per (product, warehouse).

    Written only by ``inventory.services``; every other module reads it.
    """

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    product = models.ForeignKey(Product, on_delete=models.PROTECT, related_name="stock_levels")
    warehouse = models.ForeignKey(Warehouse, on_delete=models.PROTECT, related_name="stock_levels")
    quantity = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    updated_at = models.DateTimeField(default=timezone.now)

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=["product", "warehouse"], name="uniq_stock_level_product_warehouse"),
            models.CheckConstraint(condition=models.Q(quantity__gte=0), name="stock_level_quantity_non_negative"),
        ]
        indexes = [
            models.Index(fields=["warehouse"], name="stock_level_warehouse_idx"),
        ]


class StockMove(models.Model):
    """Append-only ledger row describing the effect of one document line.

    Transfers record a single positive move naming both warehouses; every
    other document type records a signed change against one warehouse.
    """

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    document = models.ForeignKey(Document, on_delete=models.PROTECT, related_name="moves")
    line_position = models.PositiveIntegerField()
    product = models.ForeignKey(Product, on_delete=models.PROTECT, related_name="stock_moves")
    source_warehouse = models.ForeignKey(
        Warehouse,
        on_delete=models.PROTECT,
        related_name="outgoing_moves",
        null=True,
        blank=True,
    )
    destination_warehouse = models.ForeignKey(
        Warehouse,
        on_delete=models.PROTECT,
        related_name="incoming_moves",
        null=True,
        blank=True,
    )
    quantity_change = models.DecimalField(max_digits=12, decimal_places=2)
    executed_by = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.PROTECT, related_name="stock_moves")
    executed_at = models.DateTimeField(default=timezone.now)

    class Meta:
        ordering = ["executed_at", "line_position"]
        indexes = [
            models.Index(fields=["document", "line_position"], name="stock_move_document_idx"),
            models.Index(fields=["product", "executed_at"], name="stock_move_product_idx"),
            models.Index(fields=["source_warehouse"], name="stock_move_source_idx"),
            models.Index(fields=["destination_warehouse"], name="stock_move_destination_idx"),
            models.Index(fields=["-executed_at"], name="stock_move_executed_desc_idx"),
        ]

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ValidationError("StockMove records are immutable")
        return super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ValidationError("StockMove records are immutable and cannot be deleted")

    def __str__(self):
        return f"{self.product_id} {self.quantity_change:+}"
