from django.core.management.base import BaseCommand, CommandError

from inventory.services import find_ledger_drift


class Command(BaseCommand):
    help = (
        "Compare every stored stock level with the balance implied by the stock move log "
        "of validated documents. Exits non-zero when any pair disagrees."
    )

    def add_arguments(self, parser):
        parser.add_argument(
            "--limit",
            type=int,
            default=50,
            help="Maximum number of drifting pairs to print (default: 50).",
        )

    def handle(self, *args, **options):
        limit = options["limit"]
        drift = find_ledger_drift()

        self.stdout.write(self.style.MIGRATE_HEADING("Stock ledger check"))
        if not drift:
            self.stdout.write(self.style.SUCCESS("Stored stock levels match the move log."))
            return

        for row in drift[:limit]:
            self.stdout.write(
                self.style.WARNING(
                    f"  product={row['product_id']} warehouse={row['warehouse_id']} "
                    f"stored={row['stored']} ledger={row['ledger']}"
                )
            )
        if len(drift) > limit:
            self.stdout.write(f"  ... {len(drift) - limit} more")

        raise CommandError(f"Detected stock ledger drift on {len(drift)} product/warehouse pair(s).")
