# leakscope/collector/normalizer.py - Stack frame canonicalization
"""
Normalizer for raw stacks coming from sampler adapters.
Converts opaque frame descriptors into interned Frame identities.
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, Hashable, Mapping, Optional, Sequence, Tuple
import logging
import math
import numbers
import threading

from leakscope.collector.models import Frame, ProfileType
from leakscope.errors import MalformedSampleError, UnknownProfileTypeError


FrameKeyFunc = Callable[[Any], Tuple[str, str]]

# Descriptor fields that carry a symbol name, in order of preference
NAME_FIELDS = ('function', 'name', 'symbol')


def default_frame_key(descriptor) -> Tuple[str, str]:
    """
    Derive the (name, location) identity key of a frame descriptor.

    Only the symbol name and source location take part in the key; any
    other field of a mapping descriptor (addresses, inlining ids, ...)
    is ignored.

    Args:
        descriptor: a symbol string, a (name, location) pair, or a mapping
            with function/name/symbol and optional location or file/line

    Returns:
        (name, location) tuple
    """
    if isinstance(descriptor, str):
        if not descriptor:
            raise MalformedSampleError("empty frame descriptor")
        return (descriptor, '')

    if isinstance(descriptor, Mapping):
        name = None
        for field_name in NAME_FIELDS:
            if descriptor.get(field_name):
                name = str(descriptor[field_name])
                break
        if name is None:
            raise MalformedSampleError(f"frame descriptor has no symbol: {descriptor!r}")

        location = descriptor.get('location')
        if not location and descriptor.get('file'):
            location = str(descriptor['file'])
            if descriptor.get('line') is not None:
                location = f"{location}:{descriptor['line']}"
        return (name, str(location or ''))

    if isinstance(descriptor, (tuple, list)) and 1 <= len(descriptor) <= 2:
        name = str(descriptor[0])
        location = str(descriptor[1]) if len(descriptor) == 2 else ''
        return (name, location)

    raise MalformedSampleError(f"unsupported frame descriptor: {descriptor!r}")


@dataclass(frozen=True)
class NormalizedSample:
    """A stack of interned frames plus its validated value."""
    frames: Tuple[Frame, ...]
    value: Any


class Normalizer:
    """
    Canonicalizes raw stacks into interned Frame identities.

    Identity keys come from a key function chosen per profile type, so
    different runtimes can plug in their own symbol policies. Interning is
    scoped per target: within one target, equal keys always yield the very
    same Frame object.
    """

    def __init__(self, key_functions: Optional[Dict[Any, FrameKeyFunc]] = None,
                 default_key: FrameKeyFunc = default_frame_key):
        """
        Initialize the normalizer.

        Args:
            key_functions: Optional mapping of profile type to key function
            default_key: Key function for types without a specific one
        """
        self.key_functions: Dict[ProfileType, FrameKeyFunc] = {}
        for profile_type, func in (key_functions or {}).items():
            self.key_functions[ProfileType.parse(profile_type)] = func
        self.default_key = default_key

        self._interned: Dict[str, Dict[Hashable, Frame]] = {}
        self._lock = threading.Lock()

        self.sample_count = 0
        self.error_count = 0

        self.logger = logging.getLogger(__name__)

    def normalize(self, target_id: str, stack: Sequence, profile_type,
                  value) -> NormalizedSample:
        """
        Normalize one raw sample.

        Args:
            target_id: Target the sample was captured from
            stack: Root-to-leaf sequence of frame descriptors
            profile_type: ProfileType or its string value
            value: Sample value

        Returns:
            NormalizedSample

        Raises:
            MalformedSampleError: empty stack, bad value or unknown type
        """
        try:
            ptype = ProfileType.parse(profile_type)
        except UnknownProfileTypeError as e:
            self.error_count += 1
            raise MalformedSampleError(str(e)) from None

        try:
            checked = self._check_value(ptype, value)
            if not stack:
                raise MalformedSampleError("empty stack")
            if isinstance(stack, (str, bytes)) or not isinstance(stack, (list, tuple)):
                raise MalformedSampleError(
                    f"stack must be a sequence of frames, got {type(stack).__name__}"
                )

            key_func = self.key_functions.get(ptype, self.default_key)
            frames = tuple(self._intern(target_id, key_func(d)) for d in stack)
        except MalformedSampleError:
            self.error_count += 1
            raise

        self.sample_count += 1
        return NormalizedSample(frames=frames, value=checked)

    def _check_value(self, ptype: ProfileType, value):
        """Validate a sample value and coerce it to the type's number kind."""
        if isinstance(value, bool) or not isinstance(value, numbers.Real):
            raise MalformedSampleError(f"sample value is not a number: {value!r}")
        if not math.isfinite(value):
            raise MalformedSampleError(f"sample value is not finite: {value!r}")
        if value < 0:
            raise MalformedSampleError(f"negative sample value: {value!r}")

        if ptype.is_integral:
            if int(value) != value:
                raise MalformedSampleError(
                    f"{ptype.value} expects an integral value, got {value!r}"
                )
            return int(value)
        return float(value)

    def _intern(self, target_id: str, key: Tuple[str, str]) -> Frame:
        """Return the single Frame for key within target_id."""
        frames = self._interned.get(target_id)
        if frames is None:
            with self._lock:
                frames = self._interned.setdefault(target_id, {})

        frame = frames.get(key)
        if frame is None:
            with self._lock:
                frame = frames.get(key)
                if frame is None:
                    name, location = key
                    frame = Frame(name, location)
                    frames[key] = frame
        return frame

    def interned_count(self, target_id: str) -> int:
        """Number of distinct frames interned for a target."""
        return len(self._interned.get(target_id, {}))

    def forget_target(self, target_id: str):
        """Drop the intern table of a removed target."""
        with self._lock:
            self._interned.pop(target_id, None)
        self.logger.debug(f"Dropped frame table for target {target_id}")

    def get_stats(self) -> Dict:
        """
        Get normalizer statistics.

        Returns:
            Dictionary with normalization counters
        """
        return {
            'samples_normalized': self.sample_count,
            'malformed_samples': self.error_count,
            'targets': len(self._interned),
            'frames_interned': sum(len(f) for f in self._interned.values()),
        }
