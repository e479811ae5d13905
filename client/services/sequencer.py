class OperationSequencer:
    """Monotonic operation tokens.

    Workflows that replace the session (create/join, load) call ``begin()``;
    everything else captures ``current`` and checks ``is_current`` on completion.
    A superseded workflow still runs to the end, its result is just dropped.
    """

    def __init__(self) -> None:
        self._counter: int = 0

    def begin(self) -> int:
        self._counter += 1
        return self._counter

    @property
    def current(self) -> int:
        return self._counter

    def is_current(self, token: int) -> bool:
        return token == self._counter
