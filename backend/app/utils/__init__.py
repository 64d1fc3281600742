from app.utils.clock import Clock, FrozenClock, IdGenerator, SystemClock, Uuid4Generator, utcnow
from app.utils.money import ZERO, quantize2, to_decimal

__all__ = [
    "Clock",
    "FrozenClock",
    "IdGenerator",
    "SystemClock",
    "Uuid4Generator",
    "utcnow",
    "ZERO",
    "quantize2",
    "to_decimal",
]
