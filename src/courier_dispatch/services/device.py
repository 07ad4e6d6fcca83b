"""Device capabilities the dispatch core consumes: permissions and positions."""

from abc import ABC, abstractmethod
from typing import Awaitable, Callable

from courier_dispatch.models.location import LocationFix
from courier_dispatch.utils.logging import get_logger

logger = get_logger(__name__)

PositionCallback = Callable[[LocationFix], Awaitable[None]]


class PermissionProvider(ABC):
    """Location grants the device reports."""

    @abstractmethod
    async def request_foreground(self) -> bool:
        """Location while the app is in use."""

    @abstractmethod
    async def request_background(self) -> bool:
        """Location while the app is in the background."""


class WatchHandle(ABC):
    """Registration returned by ``PositionSource.watch``."""

    @abstractmethod
    def remove(self) -> None:
        """Stop delivering positions."""


class PositionSource(ABC):
    """Source of position fixes for the driver's device."""

    @abstractmethod
    async def current(self) -> LocationFix | None:
        """Most recent fix, if any."""

    @abstractmethod
    async def watch(self, callback: PositionCallback) -> WatchHandle:
        """Deliver every new fix to the callback until the handle is removed."""


class ReportedPermissions(PermissionProvider):
    """Permission grants as last reported by the device."""

    def __init__(self, foreground: bool = False, background: bool = False):
        self.foreground = foreground
        self.background = background

    def update(
        self,
        foreground: bool | None = None,
        background: bool | None = None,
    ) -> None:
        """Record a new report from the device."""
        if foreground is not None:
            self.foreground = foreground
        if background is not None:
            self.background = background

    async def request_foreground(self) -> bool:
        return self.foreground

    async def request_background(self) -> bool:
        return self.background


class _PushedWatch(WatchHandle):
    def __init__(self, source: "PushedPositionSource", callback: PositionCallback):
        self._source = source
        self._callback = callback

    def remove(self) -> None:
        if self._callback in self._source._callbacks:
            self._source._callbacks.remove(self._callback)


class PushedPositionSource(PositionSource):
    """Fixes pushed by the device over its realtime connection."""

    def __init__(self) -> None:
        self._last: LocationFix | None = None
        self._callbacks: list[PositionCallback] = []

    async def push(self, fix: LocationFix) -> None:
        """Record a fix from the device and hand it to every watcher."""
        self._last = fix
        for callback in list(self._callbacks):
            await callback(fix)

    async def current(self) -> LocationFix | None:
        return self._last

    async def watch(self, callback: PositionCallback) -> WatchHandle:
        self._callbacks.append(callback)
        return _PushedWatch(self, callback)
