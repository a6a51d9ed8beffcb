import logging
from collections import defaultdict
from decimal import Decimal

from django.core.exceptions import ValidationError
from django.db import transaction
from django.db.models import F, Q, Sum
from django.utils import timezone

from inventory.exceptions import (
    AlreadyValidated,
    DocumentCanceled,
    DocumentNotFound,
    InsufficientStock,
    MissingWarehouse,
    SameWarehouse,
    StockLedgerError,
    UnknownDocumentType,
)
from inventory.models import Document, StockLevel, StockMove

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


def get_stock_level(product_id, warehouse_id):
    """Current quantity for the pair; a pair that was never stocked reads as zero."""
    quantity = (
        StockLevel.objects.filter(product_id=product_id, warehouse_id=warehouse_id)
        .values_list("quantity", flat=True)
        .first()
    )
    return ZERO if quantity is None else quantity


def _ensure_stock_row(product_id, warehouse_id):
    StockLevel.objects.get_or_create(product_id=product_id, warehouse_id=warehouse_id)


def apply_stock_delta(product_id, warehouse_id, delta):
    """
    Add a signed delta to the stored level, creating the row at zero first.

    The increment is a single conditional UPDATE guarded by
    ``quantity >= -delta``: the database evaluates it against the latest
    committed row, so two writers can never both draw the same units and a
    negative level is never written. No row updated means the pair does not
    hold enough stock.
    """
    delta = Decimal(delta)
    with transaction.atomic():
        _ensure_stock_row(product_id, warehouse_id)
        updated = StockLevel.objects.filter(
            product_id=product_id,
            warehouse_id=warehouse_id,
            quantity__gte=-delta,
        ).update(quantity=F("quantity") + delta, updated_at=timezone.now())
        if not updated:
            raise InsufficientStock(
                product_id,
                available=get_stock_level(product_id, warehouse_id),
                requested=-delta,
                warehouse_id=warehouse_id,
            )
    return get_stock_level(product_id, warehouse_id)


def set_stock_level(product_id, warehouse_id, quantity):
    """Overwrite the stored level with a counted quantity."""
    quantity = Decimal(quantity)
    if quantity < ZERO:
        raise ValueError("Stock level cannot be set below zero.")
    with transaction.atomic():
        _ensure_stock_row(product_id, warehouse_id)
        StockLevel.objects.filter(product_id=product_id, warehouse_id=warehouse_id).update(
            quantity=quantity,
            updated_at=timezone.now(),
        )
    return quantity


def _stock_rows(pairs):
    """Stock rows for exactly the given (product, warehouse) pairs."""
    match = Q()
    for product_id, warehouse_id in pairs:
        match |= Q(product_id=product_id, warehouse_id=warehouse_id)
    return StockLevel.objects.filter(match)


def _lock_stock_levels(pairs):
    """
    Lock the stock rows for every (product, warehouse) pair a document touches.

    Rows are created when missing and locked in one canonical order so
    documents touching overlapping pairs queue behind each other instead of
    deadlocking. Returns the locked quantities keyed by pair.
    """
    ordered = sorted(set(pairs), key=lambda pair: (str(pair[1]), str(pair[0])))
    if not ordered:
        return {}
    for product_id, warehouse_id in ordered:
        _ensure_stock_row(product_id, warehouse_id)

    rows = _stock_rows(ordered).select_for_update().order_by("warehouse_id", "product_id")
    return {(row.product_id, row.warehouse_id): row.quantity for row in rows}


def _build_move(document, line, user_id, now, *, quantity_change, source_id=None, destination_id=None):
    return StockMove(
        document=document,
        line_position=line.position,
        product_id=line.product_id,
        source_warehouse_id=source_id,
        destination_warehouse_id=destination_id,
        quantity_change=quantity_change,
        executed_by_id=user_id,
        executed_at=now,
    )


def _withdraw_all_or_nothing(document, lines, apply_line, *, deposit_id=None):
    """
    Check every line against the source warehouse, then apply every line.

    Requested quantities are summed per product before comparing, so a
    document either passes for all of its lines or fails before any stock
    moves. ``apply_line`` performs the handler-specific mutation for one
    line and returns its move.
    """
    source_id = document.source_warehouse_id
    requested = defaultdict(Decimal)
    for line in lines:
        requested[line.product_id] += line.quantity

    pairs = [(product_id, source_id) for product_id in requested]
    if deposit_id is not None:
        pairs += [(product_id, deposit_id) for product_id in requested]
    levels = _lock_stock_levels(pairs)

    for line in lines:
        available = levels.get((line.product_id, source_id), ZERO)
        if available < requested[line.product_id]:
            raise InsufficientStock(
                line.product_id,
                available=available,
                requested=requested[line.product_id],
                warehouse_id=source_id,
            )

    return [apply_line(line) for line in lines]


def _validate_receipt(document, lines, user_id, now):
    destination_id = document.destination_warehouse_id
    if not destination_id:
        raise MissingWarehouse(document.doc_type, "destination_warehouse")

    _lock_stock_levels((line.product_id, destination_id) for line in lines)
    moves = []
    for line in lines:
        apply_stock_delta(line.product_id, destination_id, line.quantity)
        moves.append(_build_move(document, line, user_id, now, quantity_change=line.quantity, destination_id=destination_id))
    return moves


def _validate_delivery(document, lines, user_id, now):
    source_id = document.source_warehouse_id
    if not source_id:
        raise MissingWarehouse(document.doc_type, "source_warehouse")

    def deliver(line):
        apply_stock_delta(line.product_id, source_id, -line.quantity)
        return _build_move(document, line, user_id, now, quantity_change=-line.quantity, source_id=source_id)

    return _withdraw_all_or_nothing(document, lines, deliver)


def _validate_transfer(document, lines, user_id, now):
    source_id = document.source_warehouse_id
    destination_id = document.destination_warehouse_id
    missing = [
        name
        for name, value in (("source_warehouse", source_id), ("destination_warehouse", destination_id))
        if not value
    ]
    if missing:
        raise MissingWarehouse(document.doc_type, *missing)
    if source_id == destination_id:
        raise SameWarehouse()

    def transfer(line):
        apply_stock_delta(line.product_id, source_id, -line.quantity)
        apply_stock_delta(line.product_id, destination_id, line.quantity)
        # One move per line; direction comes from the warehouse fields, not the sign.
        return _build_move(
            document,
            line,
            user_id,
            now,
            quantity_change=line.quantity,
            source_id=source_id,
            destination_id=destination_id,
        )

    return _withdraw_all_or_nothing(document, lines, transfer, deposit_id=destination_id)


def _validate_adjustment(document, lines, user_id, now):
    warehouse_id = document.destination_warehouse_id
    if not warehouse_id:
        raise MissingWarehouse(document.doc_type, "destination_warehouse")

    _lock_stock_levels((line.product_id, warehouse_id) for line in lines)
    moves = []
    for line in lines:
        current = get_stock_level(line.product_id, warehouse_id)
        set_stock_level(line.product_id, warehouse_id, line.quantity)
        moves.append(
            _build_move(
                document,
                line,
                user_id,
                now,
                quantity_change=line.quantity - current,
                destination_id=warehouse_id,
            )
        )
    return moves


LEDGER_HANDLERS = {
    Document.DocType.RECEIPT: _validate_receipt,
    Document.DocType.DELIVERY: _validate_delivery,
    Document.DocType.TRANSFER: _validate_transfer,
    Document.DocType.ADJUSTMENT: _validate_adjustment,
}


def _ensure_not_final(document):
    if document.status == Document.Status.DONE:
        raise AlreadyValidated()
    if document.status == Document.Status.CANCELED:
        raise DocumentCanceled()


def _load_for_validation(document_id):
    try:
        document = Document.objects.select_for_update().get(pk=document_id)
    except (Document.DoesNotExist, ValidationError):
        raise DocumentNotFound(document_id) from None

    _ensure_not_final(document)
    return document


def validate_document(document_id, acting_user_id):
    """
    Apply a document to stock and mark it DONE.

    Everything happens in one transaction: stock level changes, the move
    records (one per line, in line order) and the status change commit
    together or not at all. Failures raise a ``StockLedgerError`` subclass
    and leave the document and stock untouched.
    """
    log_extra = {"document_id": document_id, "user_id": acting_user_id}
    try:
        with transaction.atomic():
            document = _load_for_validation(document_id)
            log_extra["document_type"] = document.doc_type

            handler = LEDGER_HANDLERS.get(document.doc_type)
            if handler is None:
                raise UnknownDocumentType(document.doc_type)

            now = timezone.now()
            lines = list(document.lines.select_related("product").order_by("position"))
            moves = handler(document, lines, acting_user_id, now)
            StockMove.objects.bulk_create(moves)

            finalized = Document.objects.filter(pk=document.pk, status__in=Document.EDITABLE_STATUSES).update(
                status=Document.Status.DONE,
                validated_by_id=acting_user_id,
                validated_at=now,
                updated_at=now,
            )
            if not finalized:
                # Finalized by another request since it was loaded; roll back the stock changes.
                _ensure_not_final(Document.objects.get(pk=document.pk))
            document.refresh_from_db()
    except StockLedgerError as exc:
        logger.warning("document_validation_rejected", extra={**log_extra, "error_code": exc.code})
        raise

    logger.info("document_validated", extra={**log_extra, "move_count": len(moves)})
    return document


def ledger_balance(product_id, warehouse_id):
    """Stock for the pair as implied by the move log of DONE documents."""
    moves = StockMove.objects.filter(product_id=product_id, document__status=Document.Status.DONE)
    incoming = moves.filter(destination_warehouse_id=warehouse_id).aggregate(total=Sum("quantity_change"))["total"]
    withdrawn = moves.filter(
        source_warehouse_id=warehouse_id,
        destination_warehouse__isnull=True,
    ).aggregate(total=Sum("quantity_change"))["total"]
    transferred_out = moves.filter(
        source_warehouse_id=warehouse_id,
        destination_warehouse__isnull=False,
    ).aggregate(total=Sum("quantity_change"))["total"]
    return (incoming or ZERO) + (withdrawn or ZERO) - (transferred_out or ZERO)


def ledger_balances():
    """Move-log balances for every (product, warehouse) pair that has moves."""
    balances = defaultdict(Decimal)
    moves = StockMove.objects.filter(document__status=Document.Status.DONE)

    for row in (
        moves.filter(destination_warehouse__isnull=False)
        .values("product_id", "destination_warehouse_id")
        .order_by()
        .annotate(total=Sum("quantity_change"))
    ):
        balances[(row["product_id"], row["destination_warehouse_id"])] += row["total"]

    for row in (
        moves.filter(source_warehouse__isnull=False)
        .values("product_id", "source_warehouse_id", "destination_warehouse_id")
        .order_by()
        .annotate(total=Sum("quantity_change"))
    ):
        key = (row["product_id"], row["source_warehouse_id"])
        if row["destination_warehouse_id"] is None:
            balances[key] += row["total"]
        else:
            balances[key] -= row["total"]

    return dict(balances)


def find_ledger_drift():
    """Pairs whose stored level disagrees with the move log."""
    balances = ledger_balances()
    stored = {
        (row["product_id"], row["warehouse_id"]): row["quantity"]
        for row in StockLevel.objects.values("product_id", "warehouse_id", "quantity")
    }

    drift = []
    for key in sorted(set(balances) | set(stored), key=lambda pair: (str(pair[1]), str(pair[0]))):
        expected = balances.get(key, ZERO)
        actual = stored.get(key, ZERO)
        if expected != actual:
            drift.append(
                {
                    "product_id": key[0],
                    "warehouse_id": key[1],
                    "stored": actual,
                    "ledger": expected,
                }
            )
    return drift
