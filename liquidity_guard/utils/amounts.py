"""Token amount coercion helpers."""
from decimal import Decimal, InvalidOperation
from typing import Union

from liquidity_guard.exceptions import ReasonCode, ValidationError

AmountLike = Union[Decimal, int, str, float]


def to_amount(value: AmountLike, *, field: str = "amount") -> Decimal:
    """Coerce to Decimal; floats go through str() to avoid binary artefacts."""
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be numeric, got bool", ReasonCode.INVALID_AMOUNT)
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value))
        except (InvalidOperation, ValueError) as e:
            raise ValidationError(f"{field} is not a number: {value!r}", ReasonCode.INVALID_AMOUNT) from e
    if not result.is_finite():
        raise ValidationError(f"{field} must be finite, got {value!r}", ReasonCode.INVALID_AMOUNT)
    return result


def to_positive_amount(value: AmountLike, *, field: str = "amount") -> Decimal:
    result = to_amount(value, field=field)
    if result <= 0:
        raise ValidationError(
            f"{field} must be positive, got {result}",
            ReasonCode.INVALID_AMOUNT,
            {field: str(result)},
        )
    return result
