from decimal import Decimal, ROUND_HALF_UP


def round_half_up(value, digits: int = 0):
    """
    Round half away from zero (0.5 -> 1, 2.5 -> 3), unlike builtin round().
    Returns int when digits == 0, float otherwise.
    """
    quantum = Decimal(1).scaleb(-digits)
    rounded = Decimal(str(value)).quantize(quantum, rounding=ROUND_HALF_UP)
    return int(rounded) if digits == 0 else float(rounded)


def percent(part: int, whole: int, digits: int = 0):
    """Share of part in whole as a percentage; 0 when whole is 0."""
    if not whole:
        return 0
    return round_half_up(Decimal(100 * part) / Decimal(whole), digits)
