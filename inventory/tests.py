import threading
import uuid
from decimal import Decimal
from io import StringIO
from unittest.mock import patch

from django.contrib.auth import get_user_model
from django.core.exceptions import ValidationError
from django.core.management import call_command
from django.core.management.base import CommandError
from django.db import IntegrityError, connection, transaction
from django.test import TestCase, TransactionTestCase, skipUnlessDBFeature
from rest_framework.test import APIClient

from core.models import AuditLog
from inventory.exceptions import (
    AlreadyValidated,
    DocumentCanceled,
    DocumentNotFound,
    InsufficientStock,
    MissingWarehouse,
    SameWarehouse,
    UnknownDocumentType,
)
from inventory.models import Document, DocumentLine, Product, StockLevel, StockMove, Warehouse
from inventory.serializers import DocumentSerializer
from inventory.services import (
    _stock_rows,
    apply_stock_delta,
    find_ledger_drift,
    get_stock_level,
    ledger_balance,
    set_stock_level,
    validate_document,
)
from inventory.views import DocumentViewSet


def make_document(doc_type, user, lines, *, source=None, destination=None, status=Document.Status.DRAFT, **extra):
    document = Document.objects.create(
        doc_type=doc_type,
        status=status,
        source_warehouse=source,
        destination_warehouse=destination,
        created_by=user,
        **extra,
    )
    DocumentLine.objects.bulk_create(
        [
            DocumentLine(document=document, position=position, product=product, quantity=Decimal(quantity))
            for position, (product, quantity) in enumerate(lines, start=1)
        ]
    )
    return document


def receive(user, warehouse, product, quantity):
    document = make_document(Document.DocType.RECEIPT, user, [(product, quantity)], destination=warehouse)
    return validate_document(document.id, user.id)


class LedgerFixtureMixin:
    def setUp(self):
        super().setUp()
        self.user_model = get_user_model()
        self.staff = self.user_model.objects.create_user(username="staff-ledger", password="pass1234", role="staff")
        self.manager = self.user_model.objects.create_user(username="manager-ledger", password="pass1234", role="manager")
        self.main = Warehouse.objects.create(code="W1", name="Main")
        self.east = Warehouse.objects.create(code="W2", name="East")
        self.bolts = Product.objects.create(sku="P-1", name="Bolts")
        self.paint = Product.objects.create(sku="P-2", name="Paint")


class ValidateDocumentTests(LedgerFixtureMixin, TestCase):
    def test_receipt_increases_stock_and_records_move(self):
        document = make_document(Document.DocType.RECEIPT, self.staff, [(self.bolts, "10")], destination=self.main)

        validated = validate_document(document.id, self.manager.id)

        self.assertEqual(validated.status, Document.Status.DONE)
        self.assertEqual(validated.validated_by_id, self.manager.id)
        self.assertIsNotNone(validated.validated_at)
        self.assertEqual(get_stock_level(self.bolts.id, self.main.id), Decimal("10"))

        move = StockMove.objects.get(document=document)
        self.assertEqual(move.quantity_change, Decimal("10"))
        self.assertEqual(move.destination_warehouse_id, self.main.id)
        self.assertIsNone(move.source_warehouse_id)
        self.assertEqual(move.executed_by_id, self.manager.id)
        self.assertEqual(move.executed_at, validated.validated_at)

    def test_delivery_decreases_stock(self):
        receive(self.manager, self.main, self.bolts, "10")
        document = make_document(Document.DocType.DELIVERY, self.staff, [(self.bolts, "4")], source=self.main)

        validate_document(document.id, self.manager.id)

        self.assertEqual(get_stock_level(self.bolts.id, self.main.id), Decimal("6"))
        move = StockMove.objects.get(document=document)
        self.assertEqual(move.quantity_change, Decimal("-4"))
        self.assertEqual(move.source_warehouse_id, self.main.id)
        self.assertIsNone(move.destination_warehouse_id)

    def test_delivery_with_insufficient_stock_changes_nothing(self):
        receive(self.manager, self.main, self.bolts, "6")
        document = make_document(Document.DocType.DELIVERY, self.staff, [(self.bolts, "10")], source=self.main)

        with self.assertRaises(InsufficientStock) as ctx:
            validate_document(document.id, self.manager.id)

        self.assertEqual(ctx.exception.product_id, self.bolts.id)
        self.assertEqual(ctx.exception.available, Decimal("6"))
        self.assertEqual(ctx.exception.requested, Decimal("10"))
        self.assertEqual(get_stock_level(self.bolts.id, self.main.id), Decimal("6"))
        self.assertFalse(StockMove.objects.filter(document=document).exists())
        document.refresh_from_db()
        self.assertEqual(document.status, Document.Status.DRAFT)
        self.assertIsNone(document.validated_at)

    def test_transfer_moves_stock_between_warehouses(self):
        receive(self.manager, self.main, self.bolts, "6")
        document = make_document(
            Document.DocType.TRANSFER,
            self.staff,
            [(self.bolts, "5")],
            source=self.main,
            destination=self.east,
        )

        validate_document(document.id, self.manager.id)

        self.assertEqual(get_stock_level(self.bolts.id, self.main.id), Decimal("1"))
        self.assertEqual(get_stock_level(self.bolts.id, self.east.id), Decimal("5"))
        move = StockMove.objects.get(document=document)
        self.assertEqual(move.quantity_change, Decimal("5"))
        self.assertEqual(move.source_warehouse_id, self.main.id)
        self.assertEqual(move.destination_warehouse_id, self.east.id)

    def test_adjustment_sets_counted_quantity(self):
        receive(self.manager, self.main, self.bolts, "10")
        document = make_document(
            Document.DocType.ADJUSTMENT,
            self.staff,
            [(self.bolts, "7"), (self.paint, "5")],
            destination=self.main,
            reason="Cycle count",
        )

        validate_document(document.id, self.manager.id)

        self.assertEqual(get_stock_level(self.bolts.id, self.main.id), Decimal("7"))
        self.assertEqual(get_stock_level(self.paint.id, self.main.id), Decimal("5"))
        changes = list(StockMove.objects.filter(document=document).values_list("line_position", "quantity_change"))
        self.assertEqual(changes, [(1, Decimal("-3")), (2, Decimal("5"))])

    def test_adjustment_to_zero(self):
        receive(self.manager, self.main, self.bolts, "3")
        document = make_document(Document.DocType.ADJUSTMENT, self.staff, [(self.bolts, "0")], destination=self.main)

        validate_document(document.id, self.manager.id)

        self.assertEqual(get_stock_level(self.bolts.id, self.main.id), Decimal("0"))
        self.assertEqual(StockMove.objects.get(document=document).quantity_change, Decimal("-3"))

    def test_multi_line_delivery_is_all_or_nothing(self):
        receive(self.manager, self.main, self.bolts, "10")
        receive(self.manager, self.main, self.paint, "1")
        document = make_document(
            Document.DocType.DELIVERY,
            self.staff,
            [(self.bolts, "5"), (self.paint, "3")],
            source=self.main,
        )

        with self.assertRaises(InsufficientStock) as ctx:
            validate_document(document.id, self.manager.id)

        self.assertEqual(ctx.exception.product_id, self.paint.id)
        self.assertEqual(get_stock_level(self.bolts.id, self.main.id), Decimal("10"))
        self.assertEqual(get_stock_level(self.paint.id, self.main.id), Decimal("1"))
        self.assertFalse(StockMove.objects.filter(document=document).exists())

    def test_repeated_product_lines_are_checked_together(self):
        receive(self.manager, self.main, self.bolts, "5")
        document = make_document(
            Document.DocType.DELIVERY,
            self.staff,
            [(self.bolts, "3"), (self.bolts, "3")],
            source=self.main,
        )

        with self.assertRaises(InsufficientStock) as ctx:
            validate_document(document.id, self.manager.id)

        self.assertEqual(ctx.exception.requested, Decimal("6"))
        self.assertEqual(get_stock_level(self.bolts.id, self.main.id), Decimal("5"))

    def test_failed_transfer_leaves_destination_untouched(self):
        receive(self.manager, self.main, self.bolts, "2")
        document = make_document(
            Document.DocType.TRANSFER,
            self.staff,
            [(self.bolts, "5")],
            source=self.main,
            destination=self.east,
        )

        with self.assertRaises(InsufficientStock):
            validate_document(document.id, self.manager.id)

        self.assertEqual(get_stock_level(self.bolts.id, self.main.id), Decimal("2"))
        self.assertEqual(get_stock_level(self.bolts.id, self.east.id), Decimal("0"))

    def test_moves_follow_line_order(self):
        document = make_document(
            Document.DocType.RECEIPT,
            self.staff,
            [(self.paint, "1"), (self.bolts, "2"), (self.paint, "3")],
            destination=self.main,
        )

        validate_document(document.id, self.manager.id)

        moves = list(document.moves.values_list("line_position", "product_id", "quantity_change"))
        self.assertEqual(
            moves,
            [(1, self.paint.id, Decimal("1")), (2, self.bolts.id, Decimal("2")), (3, self.paint.id, Decimal("3"))],
        )
        self.assertEqual(get_stock_level(self.paint.id, self.main.id), Decimal("4"))

    def test_validating_twice_is_rejected(self):
        document = make_document(Document.DocType.RECEIPT, self.staff, [(self.bolts, "10")], destination=self.main)
        validate_document(document.id, self.manager.id)

        with self.assertRaises(AlreadyValidated):
            validate_document(document.id, self.manager.id)

        self.assertEqual(get_stock_level(self.bolts.id, self.main.id), Decimal("10"))
        self.assertEqual(StockMove.objects.filter(document=document).count(), 1)

    def test_canceled_document_cannot_be_validated(self):
        document = make_document(
            Document.DocType.RECEIPT,
            self.staff,
            [(self.bolts, "10")],
            destination=self.main,
            status=Document.Status.CANCELED,
        )

        with self.assertRaises(DocumentCanceled):
            validate_document(document.id, self.manager.id)

        self.assertFalse(StockLevel.objects.exists())

    def test_document_finalized_after_load_is_not_validated_again(self):
        document = make_document(Document.DocType.RECEIPT, self.staff, [(self.bolts, "10")], destination=self.main)
        loaded = Document.objects.get(pk=document.pk)
        Document.objects.filter(pk=document.pk).update(status=Document.Status.CANCELED)

        with patch("inventory.services._load_for_validation", return_value=loaded):
            with self.assertRaises(DocumentCanceled):
                validate_document(document.id, self.manager.id)

        document.refresh_from_db()
        self.assertEqual(document.status, Document.Status.CANCELED)
        self.assertIsNone(document.validated_at)
        self.assertEqual(get_stock_level(self.bolts.id, self.main.id), Decimal("0"))
        self.assertFalse(StockMove.objects.filter(document=document).exists())

    def test_unknown_document_id(self):
        with self.assertRaises(DocumentNotFound):
            validate_document(uuid.uuid4(), self.manager.id)
        with self.assertRaises(DocumentNotFound):
            validate_document("not-a-uuid", self.manager.id)

    def test_delivery_without_source_warehouse(self):
        document = make_document(Document.DocType.DELIVERY, self.staff, [(self.bolts, "1")])

        with self.assertRaises(MissingWarehouse) as ctx:
            validate_document(document.id, self.manager.id)

        self.assertEqual(ctx.exception.details(), {"source_warehouse": ["This field is required for this document type."]})

    def test_transfer_names_every_missing_warehouse(self):
        document = make_document(Document.DocType.TRANSFER, self.staff, [(self.bolts, "1")])

        with self.assertRaises(MissingWarehouse) as ctx:
            validate_document(document.id, self.manager.id)

        self.assertEqual(set(ctx.exception.details()), {"source_warehouse", "destination_warehouse"})

    def test_transfer_within_one_warehouse_is_rejected(self):
        receive(self.manager, self.main, self.bolts, "5")
        document = make_document(
            Document.DocType.TRANSFER,
            self.staff,
            [(self.bolts, "1")],
            source=self.main,
            destination=self.main,
        )

        with self.assertRaises(SameWarehouse):
            validate_document(document.id, self.manager.id)

        self.assertEqual(get_stock_level(self.bolts.id, self.main.id), Decimal("5"))

    def test_unsupported_document_type_is_rejected(self):
        document = make_document("RETURN", self.staff, [(self.bolts, "1")], destination=self.main)

        with self.assertRaises(UnknownDocumentType):
            validate_document(document.id, self.manager.id)

        document.refresh_from_db()
        self.assertEqual(document.status, Document.Status.DRAFT)

    def test_validation_outcomes_are_logged(self):
        document = make_document(Document.DocType.DELIVERY, self.staff, [(self.bolts, "1")], source=self.main)

        with self.assertLogs("inventory.services", level="WARNING") as cm:
            with self.assertRaises(InsufficientStock):
                validate_document(document.id, self.manager.id)
        self.assertTrue(any("document_validation_rejected" in message for message in cm.output))
        self.assertEqual(cm.records[0].error_code, "insufficient_stock")

        receipt = make_document(Document.DocType.RECEIPT, self.staff, [(self.bolts, "1")], destination=self.main)
        with self.assertLogs("inventory.services", level="INFO") as cm:
            validate_document(receipt.id, self.manager.id)
        self.assertTrue(any("document_validated" in message for message in cm.output))
        self.assertEqual(cm.records[0].move_count, 1)


class StockPrimitiveTests(LedgerFixtureMixin, TestCase):
    def test_never_stocked_pair_reads_as_zero(self):
        self.assertEqual(get_stock_level(self.bolts.id, self.main.id), Decimal("0"))
        self.assertFalse(StockLevel.objects.exists())

    def test_apply_stock_delta_creates_row_and_refuses_negative_result(self):
        self.assertEqual(apply_stock_delta(self.bolts.id, self.main.id, Decimal("3")), Decimal("3"))

        with self.assertRaises(InsufficientStock) as ctx:
            apply_stock_delta(self.bolts.id, self.main.id, Decimal("-4"))

        self.assertEqual(ctx.exception.available, Decimal("3"))
        self.assertEqual(ctx.exception.requested, Decimal("4"))
        self.assertEqual(get_stock_level(self.bolts.id, self.main.id), Decimal("3"))

    def test_stock_row_lookup_matches_exact_pairs(self):
        for product in (self.bolts, self.paint):
            for warehouse in (self.main, self.east):
                apply_stock_delta(product.id, warehouse.id, "1")

        rows = _stock_rows([(self.bolts.id, self.main.id), (self.paint.id, self.east.id)])

        self.assertEqual(
            set(rows.values_list("product_id", "warehouse_id")),
            {(self.bolts.id, self.main.id), (self.paint.id, self.east.id)},
        )

    def test_set_stock_level_rejects_negative_quantity(self):
        with self.assertRaises(ValueError):
            set_stock_level(self.bolts.id, self.main.id, Decimal("-1"))

    def test_database_refuses_negative_stock(self):
        apply_stock_delta(self.bolts.id, self.main.id, Decimal("1"))

        with self.assertRaises(IntegrityError), transaction.atomic():
            StockLevel.objects.filter(product=self.bolts, warehouse=self.main).update(quantity=Decimal("-1"))

    def test_stock_moves_are_immutable(self):
        receive(self.manager, self.main, self.bolts, "2")
        move = StockMove.objects.get()

        move.quantity_change = Decimal("20")
        with self.assertRaises(ValidationError):
            move.save()
        with self.assertRaises(ValidationError):
            move.delete()

        self.assertEqual(StockMove.objects.get().quantity_change, Decimal("2"))


class LedgerInvariantTests(LedgerFixtureMixin, TestCase):
    def _run_history(self):
        receive(self.manager, self.main, self.bolts, "20")
        receive(self.manager, self.main, self.paint, "8")
        for document in [
            make_document(Document.DocType.DELIVERY, self.staff, [(self.bolts, "4")], source=self.main),
            make_document(
                Document.DocType.TRANSFER,
                self.staff,
                [(self.bolts, "6"), (self.paint, "2")],
                source=self.main,
                destination=self.east,
            ),
            make_document(Document.DocType.ADJUSTMENT, self.staff, [(self.paint, "5")], destination=self.main),
            make_document(Document.DocType.DELIVERY, self.staff, [(self.bolts, "1")], source=self.east),
        ]:
            validate_document(document.id, self.manager.id)

    def test_stored_levels_match_move_log(self):
        self._run_history()

        self.assertEqual(find_ledger_drift(), [])
        expected = {
            (self.bolts, self.main): Decimal("10"),
            (self.bolts, self.east): Decimal("5"),
            (self.paint, self.main): Decimal("5"),
            (self.paint, self.east): Decimal("2"),
        }
        for (product, warehouse), quantity in expected.items():
            self.assertEqual(get_stock_level(product.id, warehouse.id), quantity)
            self.assertEqual(ledger_balance(product.id, warehouse.id), quantity)

    def test_failed_validations_leave_log_consistent(self):
        self._run_history()
        short = make_document(Document.DocType.DELIVERY, self.staff, [(self.paint, "50")], source=self.east)
        with self.assertRaises(InsufficientStock):
            validate_document(short.id, self.manager.id)

        self.assertEqual(find_ledger_drift(), [])

    def test_check_stock_ledger_command(self):
        self._run_history()
        out = StringIO()
        call_command("check_stock_ledger", stdout=out)
        self.assertIn("match the move log", out.getvalue())

        StockLevel.objects.filter(product=self.bolts, warehouse=self.main).update(quantity=Decimal("11"))
        drift = find_ledger_drift()
        self.assertEqual(len(drift), 1)
        self.assertEqual(drift[0]["stored"], Decimal("11"))
        self.assertEqual(drift[0]["ledger"], Decimal("10"))

        with self.assertRaises(CommandError):
            call_command("check_stock_ledger", stdout=StringIO())

    def test_seed_demo_data_is_idempotent_and_explained_by_moves(self):
        call_command("seed_demo_data", stdout=StringIO())
        call_command("seed_demo_data", stdout=StringIO())

        main = Warehouse.objects.get(code="MAIN")
        bolts = Product.objects.get(sku="BOLT-M8")
        self.assertEqual(get_stock_level(bolts.id, main.id), Decimal("120"))
        self.assertEqual(Document.objects.filter(status=Document.Status.DONE).count(), 1)
        self.assertTrue(self.user_model.objects.filter(username="manager", role="manager").exists())
        self.assertEqual(find_ledger_drift(), [])


class ConcurrentValidationTests(LedgerFixtureMixin, TestCase):
    def test_stale_availability_read_cannot_overdraw(self):
        receive(self.manager, self.main, self.bolts, "10")
        first = make_document(Document.DocType.DELIVERY, self.staff, [(self.bolts, "6")], source=self.main)
        second = make_document(Document.DocType.DELIVERY, self.staff, [(self.bolts, "6")], source=self.main)
        validate_document(first.id, self.manager.id)

        # The second validation sees the level from before the first one committed.
        stale = {(self.bolts.id, self.main.id): Decimal("10")}
        with patch("inventory.services._lock_stock_levels", return_value=stale):
            with self.assertRaises(InsufficientStock) as ctx:
                validate_document(second.id, self.manager.id)

        self.assertEqual(ctx.exception.available, Decimal("4"))
        self.assertEqual(ctx.exception.requested, Decimal("6"))
        self.assertEqual(get_stock_level(self.bolts.id, self.main.id), Decimal("4"))
        self.assertFalse(StockMove.objects.filter(document=second).exists())
        second.refresh_from_db()
        self.assertEqual(second.status, Document.Status.DRAFT)


@skipUnlessDBFeature("has_select_for_update")
class ParallelValidationTests(LedgerFixtureMixin, TransactionTestCase):
    def _validate_in_thread(self, document_id, barrier, outcomes):
        try:
            barrier.wait()
            validate_document(document_id, self.manager.id)
            outcomes.append("done")
        except InsufficientStock:
            outcomes.append("insufficient")
        finally:
            connection.close()

    def test_parallel_deliveries_never_overdraw(self):
        receive(self.manager, self.main, self.bolts, "10")
        documents = [
            make_document(Document.DocType.DELIVERY, self.staff, [(self.bolts, "6")], source=self.main)
            for _ in range(2)
        ]
        barrier = threading.Barrier(len(documents))
        outcomes = []
        threads = [
            threading.Thread(target=self._validate_in_thread, args=(document.id, barrier, outcomes))
            for document in documents
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(sorted(outcomes), ["done", "insufficient"])
        self.assertEqual(get_stock_level(self.bolts.id, self.main.id), Decimal("4"))
        self.assertEqual(StockMove.objects.filter(document__in=documents).count(), 1)
        self.assertEqual(find_ledger_drift(), [])


class DocumentApiTests(LedgerFixtureMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.client = APIClient()
        self.admin = self.user_model.objects.create_user(username="admin-ledger", password="pass1234", role="admin")

    def _create(self, payload, user=None):
        self.client.force_authenticate(user=user or self.staff)
        return self.client.post("/api/v1/documents/", payload, format="json")

    def _receipt_payload(self, quantity="5", **extra):
        return {
            "doc_type": "RECEIPT",
            "destination_warehouse": str(self.main.id),
            "counterparty": "Acme Supply",
            "lines": [{"product": str(self.bolts.id), "quantity": quantity}],
            **extra,
        }

    def test_staff_creates_receipt_draft(self):
        response = self._create(self._receipt_payload())

        self.assertEqual(response.status_code, 201)
        payload = response.json()
        self.assertEqual(payload["status"], "DRAFT")
        self.assertEqual(payload["created_by"], str(self.staff.id))
        self.assertEqual([line["position"] for line in payload["lines"]], [1])
        self.assertEqual(payload["lines"][0]["product_sku"], "P-1")
        self.assertTrue(AuditLog.objects.filter(action="document.create", entity_id=payload["id"]).exists())

    def test_receipt_with_proof_reference_starts_ready(self):
        response = self._create(self._receipt_payload(proof_reference="scan-0042.pdf"))

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()["status"], "READY")

    def test_create_requires_lines(self):
        response = self._create({**self._receipt_payload(), "lines": []})

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "validation_error")
        self.assertIn("lines", response.json()["errors"])

    def test_create_delivery_requires_source_warehouse(self):
        response = self._create(
            {"doc_type": "DELIVERY", "lines": [{"product": str(self.bolts.id), "quantity": "1"}]}
        )

        self.assertEqual(response.status_code, 400)
        self.assertIn("source_warehouse", response.json()["errors"])

    def test_create_transfer_between_same_warehouse_is_rejected(self):
        response = self._create(
            {
                "doc_type": "TRANSFER",
                "source_warehouse": str(self.main.id),
                "destination_warehouse": str(self.main.id),
                "lines": [{"product": str(self.bolts.id), "quantity": "1"}],
            }
        )

        self.assertEqual(response.status_code, 400)
        self.assertIn("destination_warehouse", response.json()["errors"])

    def test_line_quantities_must_be_positive_except_counts(self):
        response = self._create(self._receipt_payload(quantity="0"))
        self.assertEqual(response.status_code, 400)
        self.assertIn("lines", response.json()["errors"])

        response = self._create(
            {
                "doc_type": "ADJUSTMENT",
                "destination_warehouse": str(self.main.id),
                "lines": [{"product": str(self.bolts.id), "quantity": "0"}],
            }
        )
        self.assertEqual(response.status_code, 201)

    def test_update_replaces_lines(self):
        document_id = self._create(self._receipt_payload()).json()["id"]

        response = self.client.patch(
            f"/api/v1/documents/{document_id}/",
            {
                "status": "WAITING",
                "lines": [
                    {"product": str(self.paint.id), "quantity": "2"},
                    {"product": str(self.bolts.id), "quantity": "3"},
                ],
            },
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertEqual(payload["status"], "WAITING")
        self.assertEqual(
            [(line["position"], line["product"]) for line in payload["lines"]],
            [(1, str(self.paint.id)), (2, str(self.bolts.id))],
        )
        self.assertEqual(DocumentLine.objects.filter(document_id=document_id).count(), 2)

    def test_status_cannot_jump_to_done_through_update(self):
        document_id = self._create(self._receipt_payload()).json()["id"]

        response = self.client.patch(f"/api/v1/documents/{document_id}/", {"status": "DONE"}, format="json")

        self.assertEqual(response.status_code, 400)
        self.assertIn("status", response.json()["errors"])
        self.assertFalse(StockLevel.objects.exists())

    def test_staff_cannot_validate(self):
        document_id = self._create(self._receipt_payload()).json()["id"]

        response = self.client.post(f"/api/v1/documents/{document_id}/validate/")

        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["code"], "permission_denied")
        self.assertEqual(Document.objects.get(id=document_id).status, Document.Status.DRAFT)

    def test_manager_validates_document(self):
        document_id = self._create(self._receipt_payload()).json()["id"]
        self.client.force_authenticate(user=self.manager)

        response = self.client.post(f"/api/v1/documents/{document_id}/validate/")

        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertEqual(payload["status"], "DONE")
        self.assertEqual(payload["validated_by"], str(self.manager.id))
        self.assertEqual(payload["validated_by_username"], "manager-ledger")
        self.assertEqual(get_stock_level(self.bolts.id, self.main.id), Decimal("5"))
        audit = AuditLog.objects.get(action="document.validate")
        self.assertEqual(audit.before_snapshot["status"], "DRAFT")
        self.assertEqual(audit.after_snapshot["status"], "DONE")

    def test_validate_twice_returns_conflict(self):
        document_id = self._create(self._receipt_payload()).json()["id"]
        self.client.force_authenticate(user=self.manager)
        self.client.post(f"/api/v1/documents/{document_id}/validate/")

        response = self.client.post(f"/api/v1/documents/{document_id}/validate/")

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["code"], "already_validated")
        self.assertEqual(get_stock_level(self.bolts.id, self.main.id), Decimal("5"))

    def test_insufficient_stock_envelope(self):
        response = self._create(
            {
                "doc_type": "DELIVERY",
                "source_warehouse": str(self.main.id),
                "lines": [{"product": str(self.bolts.id), "quantity": "5"}],
            }
        )
        self.client.force_authenticate(user=self.manager)

        response = self.client.post(f"/api/v1/documents/{response.json()['id']}/validate/")

        self.assertEqual(response.status_code, 409)
        payload = response.json()
        self.assertEqual(payload["code"], "insufficient_stock")
        self.assertEqual(payload["status"], 409)
        self.assertEqual(payload["errors"]["product_id"], str(self.bolts.id))
        self.assertEqual(Decimal(payload["errors"]["available"]), Decimal("0"))
        self.assertEqual(Decimal(payload["errors"]["requested"]), Decimal("5"))
        self.assertFalse(AuditLog.objects.filter(action="document.validate").exists())

    def test_missing_warehouse_on_stored_document_returns_bad_request(self):
        document = make_document(Document.DocType.RECEIPT, self.staff, [(self.bolts, "1")])
        self.client.force_authenticate(user=self.manager)

        response = self.client.post(f"/api/v1/documents/{document.id}/validate/")

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "missing_warehouse")
        self.assertIn("destination_warehouse", response.json()["errors"])

    def test_validate_unknown_document_returns_not_found(self):
        self.client.force_authenticate(user=self.manager)

        response = self.client.post(f"/api/v1/documents/{uuid.uuid4()}/validate/")

        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["code"], "not_found")

    def test_done_document_is_locked(self):
        document_id = self._create(self._receipt_payload()).json()["id"]
        self.client.force_authenticate(user=self.manager)
        self.client.post(f"/api/v1/documents/{document_id}/validate/")

        response = self.client.patch(f"/api/v1/documents/{document_id}/", {"counterparty": "Other"}, format="json")

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["code"], "document_locked")
        response = self.client.post(f"/api/v1/documents/{document_id}/cancel/")
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["code"], "document_locked")

    def test_cancel_flow(self):
        document_id = self._create(self._receipt_payload()).json()["id"]

        response = self.client.post(f"/api/v1/documents/{document_id}/cancel/")
        self.assertEqual(response.status_code, 403)

        self.client.force_authenticate(user=self.manager)
        response = self.client.post(f"/api/v1/documents/{document_id}/cancel/")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "CANCELED")

        response = self.client.post(f"/api/v1/documents/{document_id}/validate/")
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["code"], "document_canceled")

        response = self.client.patch(f"/api/v1/documents/{document_id}/", {"reason": "late"}, format="json")
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["code"], "document_canceled")
        self.assertFalse(StockLevel.objects.exists())

    def _validated_after_read(self):
        """Commit a validation between the view loading the document and writing it."""
        read_document = DocumentViewSet.get_object
        manager_id = self.manager.id

        def get_object(viewset):
            document = read_document(viewset)
            validate_document(document.id, manager_id)
            return document

        return patch.object(DocumentViewSet, "get_object", get_object)

    def test_cancel_racing_validation_keeps_document_done(self):
        document_id = self._create(self._receipt_payload(quantity="10")).json()["id"]
        self.client.force_authenticate(user=self.manager)

        with self._validated_after_read():
            response = self.client.post(f"/api/v1/documents/{document_id}/cancel/")

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["code"], "document_locked")
        document = Document.objects.get(pk=document_id)
        self.assertEqual(document.status, Document.Status.DONE)
        self.assertEqual(get_stock_level(self.bolts.id, self.main.id), Decimal("10"))
        self.assertEqual(StockMove.objects.filter(document=document).count(), 1)
        self.assertFalse(AuditLog.objects.filter(action="document.cancel").exists())

    def test_update_racing_validation_keeps_document_done(self):
        document_id = self._create(self._receipt_payload(quantity="10")).json()["id"]
        self.client.force_authenticate(user=self.manager)

        with self._validated_after_read():
            response = self.client.patch(f"/api/v1/documents/{document_id}/", {"reason": "x"}, format="json")

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["code"], "document_locked")
        document = Document.objects.get(pk=document_id)
        self.assertEqual(document.status, Document.Status.DONE)
        self.assertEqual(document.validated_by_id, self.manager.id)
        self.assertEqual(document.reason, "")

        response = self.client.post(f"/api/v1/documents/{document_id}/validate/")
        self.assertEqual(response.status_code, 409)
        self.assertEqual(get_stock_level(self.bolts.id, self.main.id), Decimal("10"))

    def test_update_writes_only_submitted_fields(self):
        document_id = self._create(self._receipt_payload()).json()["id"]
        Document.objects.filter(pk=document_id).update(status=Document.Status.WAITING)
        stale = Document.objects.get(pk=document_id)
        stale.status = Document.Status.DRAFT
        serializer = DocumentSerializer(stale, data={"reason": "recount"}, partial=True)
        serializer.is_valid(raise_exception=True)

        serializer.save()

        document = Document.objects.get(pk=document_id)
        self.assertEqual(document.reason, "recount")
        self.assertEqual(document.status, Document.Status.WAITING)

    def test_documents_cannot_be_deleted(self):
        document_id = self._create(self._receipt_payload()).json()["id"]
        self.client.force_authenticate(user=self.admin)

        response = self.client.delete(f"/api/v1/documents/{document_id}/")

        self.assertEqual(response.status_code, 405)
        self.assertTrue(Document.objects.filter(id=document_id).exists())

    def test_list_filters(self):
        receipt = make_document(Document.DocType.RECEIPT, self.staff, [(self.bolts, "1")], destination=self.main)
        delivery = make_document(Document.DocType.DELIVERY, self.staff, [(self.paint, "1")], source=self.east)
        self.client.force_authenticate(user=self.staff)

        def ids(params):
            response = self.client.get("/api/v1/documents/", params)
            self.assertEqual(response.status_code, 200)
            return {item["id"] for item in response.json()["results"]}

        self.assertEqual(ids({"type": "receipt"}), {str(receipt.id)})
        self.assertEqual(ids({"warehouse": str(self.east.id)}), {str(delivery.id)})
        self.assertEqual(ids({"product": str(self.bolts.id)}), {str(receipt.id)})
        self.assertEqual(ids({"status": "DRAFT"}), {str(receipt.id), str(delivery.id)})
        self.assertEqual(ids({"date_from": "2999-01-01"}), set())

        response = self.client.get("/api/v1/documents/", {"date_from": "yesterday"})
        self.assertEqual(response.status_code, 400)
        self.assertIn("date_from", response.json()["errors"])


class StockQueryApiTests(LedgerFixtureMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.client = APIClient()
        self.admin = self.user_model.objects.create_user(username="admin-query", password="pass1234", role="admin")
        self.bolts.reorder_level = Decimal("5")
        self.bolts.save()
        receive(self.manager, self.main, self.bolts, "8")
        transfer = make_document(
            Document.DocType.TRANSFER,
            self.staff,
            [(self.bolts, "4")],
            source=self.main,
            destination=self.east,
        )
        validate_document(transfer.id, self.manager.id)
        self.transfer = transfer

    def test_stock_moves_filters(self):
        self.client.force_authenticate(user=self.staff)

        response = self.client.get("/api/v1/stock-moves/", {"document_type": "transfer"})
        self.assertEqual(response.status_code, 200)
        results = response.json()["results"]
        self.assertEqual([item["document"] for item in results], [str(self.transfer.id)])
        self.assertEqual(results[0]["document_type"], "TRANSFER")

        response = self.client.get("/api/v1/stock-moves/", {"warehouse": str(self.east.id)})
        self.assertEqual(response.json()["count"], 1)
        response = self.client.get("/api/v1/stock-moves/", {"warehouse": str(self.main.id)})
        self.assertEqual(response.json()["count"], 2)
        response = self.client.get("/api/v1/stock-moves/", {"product": str(self.paint.id)})
        self.assertEqual(response.json()["count"], 0)

    def test_stock_moves_are_read_only(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.post("/api/v1/stock-moves/", {}, format="json")

        self.assertEqual(response.status_code, 405)

    def test_product_stock_per_warehouse(self):
        self.client.force_authenticate(user=self.staff)

        response = self.client.get(f"/api/v1/products/{self.bolts.id}/stock/")

        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertEqual(Decimal(payload["total"]), Decimal("8"))
        self.assertEqual(
            {level["warehouse_code"]: Decimal(level["quantity"]) for level in payload["levels"]},
            {"W1": Decimal("4"), "W2": Decimal("4")},
        )

    def test_stock_levels_filter_and_low_stock(self):
        self.client.force_authenticate(user=self.staff)

        response = self.client.get("/api/v1/stock-levels/", {"warehouse": str(self.east.id)})
        self.assertEqual(response.status_code, 200)
        self.assertEqual([item["product_sku"] for item in response.json()["results"]], ["P-1"])

        response = self.client.get("/api/v1/stock-levels/low/")
        self.assertEqual(response.status_code, 200)
        self.assertEqual([row["sku"] for row in response.json()], ["P-2"])

    def test_admin_manages_catalog(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.post(
            "/api/v1/admin/products/",
            {"sku": " new-01 ", "name": "Washers", "unit_of_measure": "bag"},
            format="json",
        )
        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()["sku"], "NEW-01")
        self.assertEqual(response.json()["created_by"], str(self.admin.id))
        self.assertTrue(AuditLog.objects.filter(action="product.create").exists())

        response = self.client.post("/api/v1/admin/products/", {"sku": "p-1", "name": "Dupe"}, format="json")
        self.assertEqual(response.status_code, 400)
        self.assertIn("sku", response.json()["errors"])

    def test_admin_records_warehouse_contact_details(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.post(
            "/api/v1/admin/warehouses/",
            {
                "code": "w3",
                "name": "North",
                "contact_person": "Dana",
                "phone": "+1 (555) 010-2000",
                "email": "North@Example.com",
                "capacity": 500,
            },
            format="json",
        )

        self.assertEqual(response.status_code, 201)
        payload = response.json()
        self.assertEqual(payload["code"], "W3")
        self.assertEqual(payload["email"], "north@example.com")
        self.assertEqual(payload["capacity"], 500)

        response = self.client.post(
            "/api/v1/admin/warehouses/",
            {"code": "W4", "name": "South", "phone": "call me", "capacity": -1},
            format="json",
        )
        self.assertEqual(response.status_code, 400)
        self.assertIn("phone", response.json()["errors"])
        self.assertIn("capacity", response.json()["errors"])

    def test_stocked_records_cannot_be_deleted(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.delete(f"/api/v1/admin/warehouses/{self.east.id}/")

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["code"], "protected")
        self.assertTrue(Warehouse.objects.filter(id=self.east.id).exists())
        self.assertFalse(AuditLog.objects.filter(action="warehouse.delete").exists())

    def test_staff_cannot_manage_catalog(self):
        self.client.force_authenticate(user=self.staff)

        response = self.client.post("/api/v1/admin/warehouses/", {"code": "W9", "name": "Nine"}, format="json")

        self.assertEqual(response.status_code, 403)
