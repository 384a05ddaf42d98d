"""Lighting configuration value object and the encoder port.

Turning a :class:`LightingConfig` into HID reports is device-protocol
work and lives behind :class:`LightingEncoder`.  The default
:class:`NullLightingEncoder` produces no reports, so the rest of the
lifecycle (queueing, draining, restoring) works without one.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import TYPE_CHECKING, Annotated, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field

if TYPE_CHECKING:
    from panelsync._devices import DeviceType

logger = logging.getLogger(__name__)

_HEX_COLOR = r"^#[0-9a-fA-F]{6}$"

HexColor = Annotated[str, Field(pattern=_HEX_COLOR)]


class LightingConfig(BaseModel):
    """Lighting state of a single panel.

    ``color`` applies to every control unless ``knobs`` overrides a
    control by position.
    """

    model_config = ConfigDict(frozen=True)

    color: HexColor = "#000000"
    brightness: Annotated[int, Field(ge=0, le=100)] = 100
    knobs: tuple[HexColor, ...] = ()

    @classmethod
    def all_color(cls, color: str, *, brightness: int = 100) -> LightingConfig:
        """Every control lit with the same *color*."""
        return cls(color=color, brightness=brightness)

    @property
    def is_off(self) -> bool:
        return self.brightness == 0 or (
            self.color.lower() == "#000000"
            and all(k.lower() == "#000000" for k in self.knobs)
        )


ALL_OFF = LightingConfig.all_color("#000000")


@runtime_checkable
class LightingEncoder(Protocol):
    """Converts a lighting configuration into HID output reports."""

    def encode(
        self,
        device_type: DeviceType,
        config: LightingConfig,
    ) -> Sequence[bytes]: ...


class NullLightingEncoder:
    """Encoder that produces no reports."""

    def encode(
        self,
        device_type: DeviceType,
        config: LightingConfig,  # noqa: ARG002
    ) -> Sequence[bytes]:
        logger.debug("No lighting encoder configured for %s", device_type.name)
        return ()
