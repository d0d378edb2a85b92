"""Split calculator - pure functions that turn an amount into per-person shares."""

from collections.abc import Mapping, Sequence
from datetime import datetime
from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal

from .errors import EmptyParticipants, InvalidSplit, ValidationError
from .models import CENT, ZERO, Split, SplitMethod, to_decimal, validate_splits

HUNDRED = Decimal("100")


def _round(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def _absorb_remainder(total: Decimal, shares: list[Decimal]) -> list[Decimal]:
    """Replace the last share so that the shares sum exactly to total."""
    already_allocated = sum(shares[:-1], ZERO)
    last = total - already_allocated
    if last < ZERO:
        raise InvalidSplit(f"Rounding left a negative share ({last}) for the last participant")
    return shares[:-1] + [last]


def _allocate(total: Decimal, raw_shares: list[Decimal]) -> list[Decimal]:
    """
    Round raw shares to cents and let the last one absorb the remainder.

    Half-up rounding is used unless it would push the first n-1 shares past
    the total (many tiny shares), in which case they are truncated instead.
    """
    rounded = [_round(s) for s in raw_shares]
    if sum(rounded[:-1], ZERO) > total:
        rounded = [s.quantize(CENT, rounding=ROUND_DOWN) for s in raw_shares]
    return _absorb_remainder(total, rounded)


def _check_participants(participants: Sequence[str]) -> None:
    if not participants:
        raise EmptyParticipants("Cannot split among zero participants")
    if len(set(participants)) != len(participants):
        raise ValidationError("Each participant may appear only once in a split")


def _params_for(
    participants: Sequence[str], params: Mapping[str, object] | None, what: str
) -> list[Decimal]:
    if not params:
        raise ValidationError(f"{what} split requires a value for every participant")
    missing = [p for p in participants if p not in params]
    extra = [p for p in params if p not in participants]
    if missing or extra:
        raise ValidationError(
            f"{what} split values must match the participants "
            f"(missing: {missing or 'none'}, unexpected: {extra or 'none'})"
        )
    values = [to_decimal(params[p]) for p in participants]
    if any(v < ZERO for v in values):
        raise InvalidSplit(f"{what} split values cannot be negative")
    return values


def compute_equal_shares(total: Decimal, n: int) -> list[Decimal]:
    """
    Divide total into n shares rounded to cents.

    The last share gets any rounding remainder to ensure shares sum exactly to total.
    """
    return _allocate(total, [total / n] * n)


def compute_splits(
    amount: Decimal,
    participants: Sequence[str],
    method: SplitMethod = SplitMethod.EQUAL,
    params: Mapping[str, object] | None = None,
    paid_by: str | None = None,
    now: datetime | None = None,
) -> list[Split]:
    """
    Compute the splits of an expense.

    Every method conserves the total exactly: the last participant absorbs
    whatever rounding (or the up-to-0.01 custom slack) leaves over.

    Args:
        amount: Total amount to split, must be positive
        participants: Participant user ids, in split order
        method: equal, custom or percentage
        params: user id -> amount (custom) or user id -> percent (percentage)
        paid_by: The payer; their own split is marked pre-paid
        now: Timestamp for the payer's pre-paid split

    Returns:
        List of Split objects, one per participant

    Raises:
        EmptyParticipants: If there are no participants
        InvalidSplit: If custom amounts or percentages don't add up
        ValidationError: For a non-positive amount or mismatched params
    """
    amount = to_decimal(amount)
    if amount <= ZERO:
        raise ValidationError("Amount must be greater than 0")
    if not participants and params:
        participants = list(params)
    _check_participants(participants)

    if method == SplitMethod.EQUAL:
        shares = compute_equal_shares(amount, len(participants))
        even_pct = _round(HUNDRED / len(participants))
        percentages = [even_pct] * len(participants)

    elif method == SplitMethod.CUSTOM:
        custom = _params_for(participants, params, "Custom")
        custom_total = sum(custom, ZERO)
        if abs(custom_total - amount) > CENT:
            raise InvalidSplit(
                f"Custom split amounts sum to {custom_total} but the expense is {amount}"
            )
        shares = _absorb_remainder(amount, custom)
        percentages = [_round(s / amount * HUNDRED) for s in shares]

    elif method == SplitMethod.PERCENTAGE:
        percentages = _params_for(participants, params, "Percentage")
        pct_total = sum(percentages, ZERO)
        if abs(pct_total - HUNDRED) > CENT:
            raise InvalidSplit(f"Percentage splits must total 100% (got {pct_total}%)")
        shares = _allocate(amount, [amount * p / HUNDRED for p in percentages])

    else:
        raise ValidationError(f"Unknown split method: {method}")

    stamp = now or datetime.now()
    result = [
        Split(
            user_id=user_id,
            amount=share,
            percentage=pct,
            is_paid=user_id == paid_by,
            paid_at=stamp if user_id == paid_by else None,
        )
        for user_id, share, pct in zip(participants, shares, percentages)
    ]
    validate_splits(result, amount)
    return result
