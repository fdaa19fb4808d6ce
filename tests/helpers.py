"""Shared test doubles."""


class FakeClock:
    """Millisecond clock that only moves when told to, or when slept on."""

    def __init__(self, now: int = 1_000_000):
        self.now = now
        self.sleeps = []

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> int:
        self.now += int(ms)
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += int(round(seconds * 1000))
