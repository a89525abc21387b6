"""Triggers and the channels they map to.

Learn: Publishers and subscribers speak in *triggers* ("MESSAGE_SEND", or a
path like ("room", 42)). Redis only knows *channels*. A trigger transform
maps one to the other, which is where naming conventions live, e.g. the
"chatrelay:" prefix that keeps our channels apart from anything else on a
shared Redis.

Whether a subscription is exact or a glob is decided at the call site by
wrapping the trigger: Pattern("room.*") vs Exact("MESSAGE_SEND"). A bare
trigger means Exact.
"""

from dataclasses import dataclass
from typing import Any, Callable, Mapping, NamedTuple, Optional, Union

Path = tuple[Union[str, int], ...]
Trigger = Union[str, Path]

# (trigger, options) -> channel name
TriggerTransform = Callable[[Trigger, Optional[Mapping[str, Any]]], str]


@dataclass(frozen=True)
class Exact:
    """Subscribe to exactly one channel."""

    trigger: Trigger


@dataclass(frozen=True)
class Pattern:
    """Subscribe to every channel matching a Redis glob."""

    trigger: Trigger


Target = Union[Exact, Pattern]


class Channel(NamedTuple):
    """A physical subscription target: a channel name and its kind."""

    name: str
    pattern: bool = False


def default_transform(
    trigger: Trigger, options: Optional[Mapping[str, Any]] = None
) -> str:
    """Names pass through; paths are joined with dots."""
    if isinstance(trigger, str):
        return trigger
    return ".".join(str(segment) for segment in trigger)


def prefixed_transform(prefix: str) -> TriggerTransform:
    """Build a transform that namespaces every channel with `prefix`."""

    def transform(
        trigger: Trigger, options: Optional[Mapping[str, Any]] = None
    ) -> str:
        return f"{prefix}{default_transform(trigger, options)}"

    return transform


def as_target(trigger: Union[Trigger, Target]) -> Target:
    if isinstance(trigger, (Exact, Pattern)):
        return trigger
    if isinstance(trigger, (str, tuple)):
        return Exact(trigger)
    raise TypeError(
        f"Trigger must be a str, a tuple path, Exact or Pattern, "
        f"not {type(trigger).__name__}"
    )


def resolve_channel(
    trigger: Union[Trigger, Target],
    transform: TriggerTransform,
    options: Optional[Mapping[str, Any]] = None,
) -> Channel:
    """Run a trigger (or Exact/Pattern wrapper) through the transform."""
    target = as_target(trigger)
    return Channel(
        name=transform(target.trigger, options),
        pattern=isinstance(target, Pattern),
    )
