from decimal import ROUND_HALF_UP, Decimal

ZERO = Decimal("0.00")
CENT = Decimal("0.01")


def overdue_days(due_date, returned_at):
    """Calendar days between the due date and the return, or 0."""
    return max(0, (returned_at.date() - due_date.date()).days)


def compute_fine(due_date, returned_at, per_day="0.50", cap=None):
    """
    Fine owed for a return at ``returned_at`` on a loan due at ``due_date``.

    Every calendar day past the due date costs ``per_day``. When ``cap`` is
    given the fine never exceeds it.
    """
    days = overdue_days(due_date, returned_at)
    if days == 0:
        return ZERO

    fine = Decimal(str(per_day)) * days
    if cap is not None:
        fine = min(fine, Decimal(str(cap)))
    return fine.quantize(CENT, rounding=ROUND_HALF_UP)


def format_money(amount):
    return f"£{Decimal(str(amount or 0)).quantize(CENT, rounding=ROUND_HALF_UP)}"
