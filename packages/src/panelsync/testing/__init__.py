"""Public test-support utilities for panelsync.

Re-exports test doubles and factories so that test suites can import
everything from a single ``panelsync.testing`` namespace instead of
reaching into private modules.

Provided symbols:

- :class:`AppHarness` — App wired to the doubles below.
- :class:`MockBroker` / :class:`MockBrokerConnection` — in-memory broker
  with a retained store and wildcard routing.
- :class:`FakeHidBackend` / :class:`FakeHidHandle` — attach and detach
  panels by serial, inspect written reports.
- :class:`RecordingEncoder` — lighting encoder with decodable reports.
- :class:`ScriptedPowerSource` — power events on demand.
- :func:`make_settings` — ``Settings`` without ``.env`` files or
  environment variables.
"""

from panelsync.testing._broker import MockBroker, MockBrokerConnection, PublishedMessage
from panelsync.testing._harness import AppHarness
from panelsync.testing._hid import FakeHidBackend, FakeHidHandle, RecordingEncoder
from panelsync.testing._power import ScriptedPowerSource
from panelsync.testing._settings import make_settings

__all__ = [
    "AppHarness",
    "FakeHidBackend",
    "FakeHidHandle",
    "MockBroker",
    "MockBrokerConnection",
    "PublishedMessage",
    "RecordingEncoder",
    "ScriptedPowerSource",
    "make_settings",
]
