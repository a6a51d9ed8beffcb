from decimal import Decimal

from django.db import transaction
from rest_framework import serializers

from inventory.models import Document, DocumentLine, Product, StockLevel, StockMove, Warehouse

# Warehouse fields each document type must name before it can be saved.
REQUIRED_WAREHOUSES = {
    Document.DocType.RECEIPT: ("destination_warehouse",),
    Document.DocType.DELIVERY: ("source_warehouse",),
    Document.DocType.TRANSFER: ("source_warehouse", "destination_warehouse"),
    Document.DocType.ADJUSTMENT: ("destination_warehouse",),
}


class ProductSerializer(serializers.ModelSerializer):
    class Meta:
        model = Product
        fields = [
            "id",
            "sku",
            "name",
            "category",
            "unit_of_measure",
            "reorder_level",
            "is_active",
            "created_by",
            "created_at",
            "updated_at",
        ]
        read_only_fields = ["id", "created_by", "created_at", "updated_at"]

    def validate_sku(self, value):
        sku = value.strip().upper()
        clashes = Product.objects.filter(sku=sku)
        if self.instance is not None:
            clashes = clashes.exclude(pk=self.instance.pk)
        if clashes.exists():
            raise serializers.ValidationError("A product with this SKU already exists.")
        return sku


class WarehouseSerializer(serializers.ModelSerializer):
    class Meta:
        model = Warehouse
        fields = [
            "id",
            "code",
            "name",
            "address",
            "contact_person",
            "phone",
            "email",
            "capacity",
            "kind",
            "status",
            "created_at",
            "updated_at",
        ]
        read_only_fields = ["id", "created_at", "updated_at"]

    def validate_code(self, value):
        code = value.strip().upper()
        clashes = Warehouse.objects.filter(code=code)
        if self.instance is not None:
            clashes = clashes.exclude(pk=self.instance.pk)
        if clashes.exists():
            raise serializers.ValidationError("A warehouse with this code already exists.")
        return code

    def validate_email(self, value):
        return value.strip().lower()


class DocumentLineSerializer(serializers.ModelSerializer):
    product_sku = serializers.CharField(source="product.sku", read_only=True)
    product_name = serializers.CharField(source="product.name", read_only=True)

    class Meta:
        model = DocumentLine
        fields = ["id", "position", "product", "product_sku", "product_name", "quantity"]
        read_only_fields = ["id", "position"]


class DocumentSerializer(serializers.ModelSerializer):
    lines = DocumentLineSerializer(many=True, required=False)
    created_by_username = serializers.CharField(source="created_by.username", read_only=True)
    validated_by_username = serializers.CharField(source="validated_by.username", read_only=True, default=None)

    class Meta:
        model = Document
        fields = [
            "id",
            "doc_type",
            "status",
            "source_warehouse",
            "destination_warehouse",
            "counterparty",
            "reason",
            "proof_reference",
            "created_by",
            "created_by_username",
            "validated_by",
            "validated_by_username",
            "validated_at",
            "created_at",
            "updated_at",
            "lines",
        ]
        read_only_fields = ["id", "created_by", "validated_by", "validated_at", "created_at", "updated_at"]

    def validate_status(self, value):
        if value not in Document.EDITABLE_STATUSES:
            raise serializers.ValidationError(
                "Status can only be set to DRAFT, WAITING or READY; use the validate or cancel actions."
            )
        return value

    def validate(self, attrs):
        instance = self.instance
        doc_type = attrs.get("doc_type") or getattr(instance, "doc_type", None)
        if instance is not None and doc_type != instance.doc_type:
            raise serializers.ValidationError({"doc_type": "Document type cannot be changed."})
        if doc_type is None:
            raise serializers.ValidationError({"doc_type": "This field is required."})

        warehouses = {
            name: attrs[name] if name in attrs else getattr(instance, name, None)
            for name in ("source_warehouse", "destination_warehouse")
        }
        missing = {
            name: "This field is required for this document type."
            for name in REQUIRED_WAREHOUSES[doc_type]
            if warehouses[name] is None
        }
        if missing:
            raise serializers.ValidationError(missing)
        if doc_type == Document.DocType.TRANSFER and warehouses["source_warehouse"] == warehouses["destination_warehouse"]:
            raise serializers.ValidationError({"destination_warehouse": "Destination must differ from source warehouse."})

        if "lines" in attrs or instance is None:
            self._validate_lines(doc_type, attrs.get("lines") or [])
        return attrs

    def _validate_lines(self, doc_type, lines):
        if not lines:
            raise serializers.ValidationError({"lines": "At least one line is required."})

        # Counted quantities on adjustments may be zero; everything else moves a positive amount.
        errors = {}
        for index, line in enumerate(lines):
            quantity = Decimal(line["quantity"])
            if doc_type == Document.DocType.ADJUSTMENT:
                if quantity < 0:
                    errors[index] = {"quantity": "Counted quantity cannot be negative."}
            elif quantity <= 0:
                errors[index] = {"quantity": "Quantity must be greater than zero."}
        if errors:
            raise serializers.ValidationError({"lines": errors})

    def _write_lines(self, document, lines):
        DocumentLine.objects.bulk_create(
            DocumentLine(document=document, position=position, product=line["product"], quantity=line["quantity"])
            for position, line in enumerate(lines, start=1)
        )

    @transaction.atomic
    def create(self, validated_data):
        lines = validated_data.pop("lines", [])
        if "status" not in validated_data:
            has_proof = bool(validated_data.get("proof_reference"))
            if validated_data["doc_type"] == Document.DocType.RECEIPT and has_proof:
                validated_data["status"] = Document.Status.READY
            else:
                validated_data["status"] = Document.Status.DRAFT
        document = Document.objects.create(**validated_data)
        self._write_lines(document, lines)
        return document

    @transaction.atomic
    def update(self, instance, validated_data):
        lines = validated_data.pop("lines", None)
        for attr, value in validated_data.items():
            setattr(instance, attr, value)
        # Write only the submitted columns.
        instance.save(update_fields=[*validated_data, "updated_at"])
        if lines is not None:
            instance.lines.all().delete()
            self._write_lines(instance, lines)
            # Drop lines prefetched by the view so the response shows the new set.
            instance._prefetched_objects_cache = {}
        return instance


class StockMoveSerializer(serializers.ModelSerializer):
    document_type = serializers.CharField(source="document.doc_type", read_only=True)
    product_sku = serializers.CharField(source="product.sku", read_only=True)
    executed_by_username = serializers.CharField(source="executed_by.username", read_only=True)

    class Meta:
        model = StockMove
        fields = [
            "id",
            "document",
            "document_type",
            "line_position",
            "product",
            "product_sku",
            "source_warehouse",
            "destination_warehouse",
            "quantity_change",
            "executed_by",
            "executed_by_username",
            "executed_at",
        ]
        read_only_fields = fields


class StockLevelSerializer(serializers.ModelSerializer):
    product_sku = serializers.CharField(source="product.sku", read_only=True)
    product_name = serializers.CharField(source="product.name", read_only=True)
    warehouse_code = serializers.CharField(source="warehouse.code", read_only=True)

    class Meta:
        model = StockLevel
        fields = ["id", "product", "product_sku", "product_name", "warehouse", "warehouse_code", "quantity", "updated_at"]
        read_only_fields = fields
