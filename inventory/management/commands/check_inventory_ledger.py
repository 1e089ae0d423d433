from django.core.management.base import BaseCommand, CommandError

from inventory.services import ledger_discrepancies


class Command(BaseCommand):
    help = "Verify that every inventory item's stock equals the sum of its log entries."

    def handle(self, *args, **options):
        rows = ledger_discrepancies()

        if not rows:
            self.stdout.write(self.style.SUCCESS("Inventory ledger is balanced."))
            return

        self.stdout.write(self.style.WARNING(f"Found {len(rows)} item(s) out of balance."))
        for row in rows:
            self.stdout.write(
                f"- {row['name']} ({row['inventory_item_id']}): stock={row['current_stock']} "
                f"ledger={row['ledger_total']} difference={row['difference']}"
            )
        raise CommandError("Inventory ledger does not reconcile.")
