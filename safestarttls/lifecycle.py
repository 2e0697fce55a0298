import enum
import logging

logger = logging.getLogger(__name__)


class LifecycleState(enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTED = "connected"


class ConnectionLifecycle:
    """
    Gate consulted by script builders before they emit Connect/Disconnect effects.

    A lifecycle describes at most one logical connection at a time:
    `connect` only does something while disconnected, `disconnect` only while connected.
    The executor never looks at this, it tracks the real channel on its own.
    """

    state: LifecycleState

    def __init__(self, state: LifecycleState = LifecycleState.DISCONNECTED) -> None:
        self.state = state

    def can_connect(self) -> bool:
        return self.state is LifecycleState.DISCONNECTED

    def can_disconnect(self) -> bool:
        return self.state is LifecycleState.CONNECTED

    def connect(self) -> bool:
        """
        Switch to connected. Returns False and does nothing if already connected.
        """
        if not self.can_connect():
            logger.debug("lifecycle: ignoring connect, already connected")
            return False
        self._set(LifecycleState.CONNECTED)
        return True

    def disconnect(self) -> bool:
        """
        Switch to disconnected. Returns False and does nothing if not connected.
        """
        if not self.can_disconnect():
            logger.debug("lifecycle: ignoring disconnect, not connected")
            return False
        self._set(LifecycleState.DISCONNECTED)
        return True

    def _set(self, state: LifecycleState) -> None:
        if self.state is not state:
            logger.debug(f"lifecycle: switch to {state.value}")
            self.state = state

    def __repr__(self):
        return f"ConnectionLifecycle({self.state.value})"
