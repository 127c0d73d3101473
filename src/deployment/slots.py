"""Slot Resolution.

Works out which of the two slots owns production right now.
"""

import logging
from typing import Dict, Optional, Tuple

from .config import EnvironmentConfig, SlotColor
from .exceptions import StateError
from .runtime import ContainerInfo, ContainerRuntime

logger = logging.getLogger(__name__)


class SlotResolver:
    """Maps slot colors to containers and resolves the active slot."""

    def __init__(self, runtime: ContainerRuntime, config: EnvironmentConfig):
        self._runtime = runtime
        self._config = config

    def container_name(self, color: SlotColor) -> str:
        return self._config.container_name(color)

    def inspect(self, color: SlotColor) -> Optional[ContainerInfo]:
        """Inspect the container occupying a slot, running or not."""
        return self._runtime.inspect(self.container_name(color))

    def is_running(self, color: SlotColor) -> bool:
        info = self.inspect(color)
        return info is not None and info.running

    def resolve_active(self) -> Tuple[SlotColor, SlotColor]:
        """Return ``(active, backup)``.

        Raises:
            StateError: no slot is running, or both are.
        """
        running = [color for color in SlotColor if self.is_running(color)]
        if not running:
            raise StateError(
                f"No running slot for {self._config.slot_name}",
                StateError.NO_ACTIVE_SLOT,
            )
        if len(running) > 1:
            raise StateError(
                f"Both slots of {self._config.slot_name} are running; "
                "operator intervention required",
                StateError.AMBIGUOUS,
            )
        active = running[0]
        logger.info("Active slot: %s, backup slot: %s", active.value, active.complement.value)
        return active, active.complement

    @staticmethod
    def target_for(active: SlotColor) -> SlotColor:
        return active.complement

    def describe(self) -> Dict[str, Optional[ContainerInfo]]:
        """Container info for both slots keyed by color value."""
        return {color.value: self.inspect(color) for color in SlotColor}
