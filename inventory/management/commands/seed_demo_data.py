from decimal import Decimal

from django.contrib.auth import get_user_model
from django.core.management.base import BaseCommand
from django.db import transaction

from inventory.models import Document, DocumentLine, Product, Warehouse
from inventory.services import validate_document

OPENING_RECEIPT_REFERENCE = "seed-opening-stock"


class Command(BaseCommand):
    help = "Seed demo users, warehouses, products and opening stock for local development."

    def _user(self, username, password, role, **extra):
        User = get_user_model()
        user, created = User.objects.get_or_create(
            username=username,
            defaults={"email": f"{username}@example.com", "role": role, "is_active": True, **extra},
        )
        if created:
            user.set_password(password)
            user.save(update_fields=["password"])
        return user

    @transaction.atomic
    def handle(self, *args, **options):
        User = get_user_model()
        admin_user = self._user("admin", "admin1234", User.Role.ADMIN, is_staff=True, is_superuser=True)
        self._user("manager", "manager1234", User.Role.MANAGER)
        self._user("staff", "staff1234", User.Role.STAFF)

        main, _ = Warehouse.objects.get_or_create(
            code="MAIN",
            defaults={"name": "Main Warehouse", "kind": Warehouse.Kind.MAIN},
        )
        Warehouse.objects.get_or_create(
            code="EAST",
            defaults={"name": "East Distribution", "kind": Warehouse.Kind.DISTRIBUTION},
        )

        bolts, _ = Product.objects.get_or_create(
            sku="BOLT-M8",
            defaults={
                "name": "Hex bolt M8",
                "category": "Fasteners",
                "unit_of_measure": "box",
                "reorder_level": Decimal("20"),
                "created_by": admin_user,
            },
        )
        paint, _ = Product.objects.get_or_create(
            sku="PAINT-5L",
            defaults={
                "name": "Floor paint 5L",
                "category": "Coatings",
                "unit_of_measure": "can",
                "reorder_level": Decimal("10"),
                "created_by": admin_user,
            },
        )

        # Opening stock goes through a validated receipt so the move log explains it.
        if not Document.objects.filter(proof_reference=OPENING_RECEIPT_REFERENCE).exists():
            receipt = Document.objects.create(
                doc_type=Document.DocType.RECEIPT,
                status=Document.Status.READY,
                destination_warehouse=main,
                counterparty="Demo Supplier",
                proof_reference=OPENING_RECEIPT_REFERENCE,
                created_by=admin_user,
            )
            DocumentLine.objects.bulk_create(
                [
                    DocumentLine(document=receipt, position=1, product=bolts, quantity=Decimal("120")),
                    DocumentLine(document=receipt, position=2, product=paint, quantity=Decimal("40")),
                ]
            )
            validate_document(receipt.id, admin_user.id)

        self.stdout.write(self.style.SUCCESS("Demo data seeded successfully."))
        self.stdout.write("Credentials: admin/admin1234, manager/manager1234, staff/staff1234")
