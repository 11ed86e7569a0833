"""Wall-clock timing of ensemble dispatch phases.

The dispatcher records buffer allocation, kernel compilation and kernel
launch as start/stop pairs on :data:`default_timelogger`. What gets printed
depends on the logger's verbosity; recording always happens.
"""

import time
from contextlib import contextmanager
from typing import Any, Iterator, Optional

import attrs

VERBOSITY_LEVELS = ('default', 'verbose', 'debug', None)


def _normalise_verbosity(verbosity):
    if verbosity == 'None':
        return None
    if verbosity not in VERBOSITY_LEVELS:
        raise ValueError(
            "verbosity must be 'default', 'verbose', 'debug' or None, "
            f"got '{verbosity}'"
        )
    return verbosity


@attrs.define(frozen=True)
class TimingEvent:
    """Record of a single timing event.

    Attributes
    ----------
    name : str
        Identifier for the event (e.g., 'kernel_launch')
    event_type : str
        Type of event: 'start' or 'stop'
    timestamp : float
        Wall-clock time from time.perf_counter()
    metadata : dict
        Optional metadata (lane counts, buffer shapes, etc.)
    """
    name: str = attrs.field(validator=attrs.validators.instance_of(str))
    event_type: str = attrs.field(
        validator=attrs.validators.in_({'start', 'stop'})
    )
    timestamp: float = attrs.field(
        validator=attrs.validators.instance_of(float)
    )
    metadata: dict = attrs.field(factory=dict)


class TimeLogger:
    """Event recorder for dispatch phases.

    Parameters
    ----------
    verbosity : str or None, default='default'
        - 'default': aggregate durations printed by :meth:`print_summary`
        - 'verbose': each duration printed when its event stops
        - 'debug': every start and stop event printed
        - None: nothing printed
    """

    def __init__(self, verbosity: Optional[str] = 'default') -> None:
        self.verbosity = _normalise_verbosity(verbosity)
        self.events: list[TimingEvent] = []
        self._active_starts: dict[str, float] = {}

    def set_verbosity(self, verbosity: Optional[str]) -> None:
        """Change the print level without discarding recorded events."""
        self.verbosity = _normalise_verbosity(verbosity)

    def _record(self, event_name: str, event_type: str,
                metadata: dict) -> float:
        if not event_name:
            raise ValueError("event_name cannot be empty")
        timestamp = time.perf_counter()
        self.events.append(
            TimingEvent(
                name=event_name,
                event_type=event_type,
                timestamp=timestamp,
                metadata=metadata,
            )
        )
        return timestamp

    def start_event(self, event_name: str, **metadata: Any) -> None:
        """Record the start of a timed operation."""
        timestamp = self._record(event_name, 'start', metadata)
        self._active_starts[event_name] = timestamp
        if self.verbosity == 'debug':
            print(f"[DEBUG] Started: {event_name}")

    def stop_event(self, event_name: str, **metadata: Any) -> None:
        """Record the end of a timed operation.

        A stop without a matching start is still recorded.
        """
        timestamp = self._record(event_name, 'stop', metadata)
        start = self._active_starts.pop(event_name, None)
        if start is None:
            if self.verbosity == 'debug':
                print(f"[DEBUG] Warning: stop_event('{event_name}') "
                      "without matching start")
            return

        duration = timestamp - start
        if self.verbosity == 'debug':
            print(f"[DEBUG] Stopped: {event_name} ({duration:.3f}s)")
        elif self.verbosity == 'verbose':
            print(f"{event_name}: {duration:.3f}s")

    @contextmanager
    def timed(self, event_name: str, **metadata: Any) -> Iterator[None]:
        """Bracket a block with start and stop events.

        The stop event is recorded even if the block raises.
        """
        self.start_event(event_name, **metadata)
        try:
            yield
        finally:
            self.stop_event(event_name, **metadata)

    def get_aggregate_durations(
        self, category: Optional[str] = None
    ) -> dict[str, float]:
        """Total duration per event name.

        Parameters
        ----------
        category : str, optional
            Only count events whose ``metadata['category']`` matches.
        """
        durations: dict[str, float] = {}
        event_starts: dict[str, float] = {}

        for event in self.events:
            if category is not None:
                if event.metadata.get('category') != category:
                    continue
            if event.event_type == 'start':
                event_starts[event.name] = event.timestamp
            elif event.event_type == 'stop' and event.name in event_starts:
                duration = event.timestamp - event_starts.pop(event.name)
                durations[event.name] = (
                    durations.get(event.name, 0.0) + duration
                )
        return durations

    def clear(self) -> None:
        """Forget all recorded events."""
        self.events.clear()
        self._active_starts.clear()

    def print_summary(self) -> None:
        """Print aggregate durations in 'default' mode.

        Verbose and debug modes have already printed inline.
        """
        if self.verbosity == 'default':
            durations = self.get_aggregate_durations()
            if durations:
                print("\nTiming Summary:")
                for name, duration in sorted(durations.items()):
                    print(f"  {name}: {duration:.3f}s")


#: Logger shared by the dispatcher and integrator factories.
default_timelogger = TimeLogger(verbosity=None)
