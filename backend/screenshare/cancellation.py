"""
Cooperative cancellation token.

Every component that waits on the network receives a CancelToken and
checks it at each bounded wait, so shutdown never has to interrupt a task.
"""

import asyncio


class CancelToken:
    """A one-shot shutdown signal that can be awaited with a timeout."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._children: list["CancelToken"] = []
        self._parent: "CancelToken | None" = None

    @classmethod
    def already_cancelled(cls) -> "CancelToken":
        token = cls()
        token.cancel()
        return token

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        """Signal shutdown. Safe to call more than once."""
        if self._event.is_set():
            return
        self._event.set()
        children, self._children = self._children, []
        for child in children:
            child.cancel()
        if self._parent is not None:
            self._parent._release(self)
            self._parent = None

    def child(self) -> "CancelToken":
        """Return a token cancelled together with this one, but cancellable on its own."""
        token = CancelToken()
        if self.cancelled:
            token.cancel()
        else:
            token._parent = self
            self._children.append(token)
        return token

    def _release(self, child: "CancelToken") -> None:
        if child in self._children:
            self._children.remove(child)

    async def wait(self, timeout: float | None = None) -> bool:
        """
        Wait until cancelled or until `timeout` seconds pass.

        Returns True if the token is cancelled.
        """
        if self._event.is_set():
            return True
        try:
            await asyncio.wait_for(self._event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass
        return self._event.is_set()

    def __repr__(self) -> str:
        return f"CancelToken(cancelled={self.cancelled})"
