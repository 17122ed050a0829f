"""Seeded linear congruential generator used for reproducible scans."""

LCG_MODULUS = 2**31
LCG_MULTIPLIER = 1103515245
LCG_INCREMENT = 12345


class SeededRandom:
    """Deterministic PRNG: the same seed yields the same stream forever.

    The recurrence is computed on Python integers, so the stream is exact
    for every seed (including negative and very large ones).
    """

    def __init__(self, seed: int):
        self.seed = int(seed)
        self.state = self.seed % LCG_MODULUS

    def next(self) -> float:
        """Advance the generator and return a float in ``[0, 1)``."""
        self.state = (LCG_MULTIPLIER * self.state + LCG_INCREMENT) % LCG_MODULUS
        return self.state / LCG_MODULUS

    def randint_below(self, upper: int) -> int:
        """Draw an index in ``range(upper)``; ``upper`` must be positive."""
        return int(self.next() * upper)
