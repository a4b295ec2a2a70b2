"""Config environment and slicer profile loading.

The generator reads three flat key -> value maps (printer, filament and
print profiles) merged into one :class:`ConfigEnvironment`.  Every value
is normalised to a tuple of strings: multi-valued parameters such as
per-extruder settings are split on ``;``.  Text-valued keys (G-code
snippets, the output filename format, notes) are never split.

Reads go through a single accessor family (``scalar_at``, ``float_at``,
``int_at``, ``bool_at``, ``text``).  When a key is absent or empty the
caller's default wins, then the central table in ``defaults.yaml``; a key
found in neither raises :class:`ConfigError`.

Usage::

    from pa_generator.configs.loader import ConfigEnvironment, load_profile
    cfg = ConfigEnvironment.merge(
        load_profile("printer/MK3S.ini"),
        load_profile("filament/PLA.ini"),
        load_profile("print/0.20mm.ini"),
    )
    nozzle = cfg.float_at("nozzle_diameter")
"""

from __future__ import annotations

import logging
from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any

from pa_generator.utils.fs import load_yaml

logger = logging.getLogger(__name__)

_MISSING = object()

TEXT_KEYS = frozenset(
    {
        "output_filename_format",
        "notes",
        "printer_notes",
        "filament_notes",
        "post_process",
        "inherits",
    }
)
"""Keys whose values are free text and must not be split on ``;``."""

_TRUE_STRINGS = frozenset({"1", "true", "yes", "on"})


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class ConfigError(Exception):
    """Raised when a configuration value is missing or malformed."""

    pass


# ---------------------------------------------------------------------------
# Normalisation helpers
# ---------------------------------------------------------------------------


def is_text_key(key: str) -> bool:
    """Return ``True`` for keys holding free text (G-code snippets etc.)."""
    return key in TEXT_KEYS or key.endswith("_gcode")


def _to_text(value: Any) -> str:
    if isinstance(value, bool):
        return "1" if value else "0"
    if value is None:
        return ""
    return str(value)


def normalize_value(key: str, value: Any) -> tuple[str, ...]:
    """Normalise one raw config value to a tuple of strings.

    Parameters
    ----------
    key : str
        Parameter name (decides whether ``;`` splitting applies).
    value : Any
        Raw value: string, number, bool, or a sequence of those.

    Returns
    -------
    tuple[str, ...]
        One element for scalars and text keys, several for ``;``-joined
        multi-values.
    """
    if isinstance(value, (list, tuple)):
        return tuple(_to_text(v) for v in value)
    text = _to_text(value)
    if is_text_key(key) or ";" not in text:
        return (text,)
    return tuple(text.split(";"))


def parse_relative(raw: str, base: float) -> float:
    """Resolve ``"<n>%"`` against *base*, or parse an absolute number.

    Raises
    ------
    ConfigError
        If *raw* is not a number or percentage.
    """
    text = str(raw).strip()
    try:
        if text.endswith("%"):
            return base * float(text[:-1]) / 100.0
        return float(text)
    except ValueError as exc:
        raise ConfigError(
            f"Expected a number or percentage, got {raw!r}"
        ) from exc


@lru_cache(maxsize=1)
def load_defaults() -> dict[str, str]:
    """Load the central defaults table shipped as ``defaults.yaml``."""
    data = load_yaml(Path(__file__).parent / "defaults.yaml") or {}
    return {str(k): _to_text(v) for k, v in data.items()}


def default_for(key: str) -> str | None:
    """Return the central default for *key*, or ``None`` if it has none."""
    return load_defaults().get(key)


# ---------------------------------------------------------------------------
# Config environment
# ---------------------------------------------------------------------------


class ConfigEnvironment(Mapping[str, tuple[str, ...]]):
    """Immutable key -> multi-value mapping with typed accessors.

    Parameters
    ----------
    values : Mapping[str, Any] | None
        Raw key -> value(s) map.  Values are normalised on construction.
    """

    def __init__(self, values: Mapping[str, Any] | None = None) -> None:
        self._values: dict[str, tuple[str, ...]] = {
            str(k): normalize_value(str(k), v) for k, v in (values or {}).items()
        }

    @classmethod
    def merge(cls, *sources: Mapping[str, Any] | None) -> ConfigEnvironment:
        """Merge several raw maps; later sources override earlier ones.

        The conventional order is printer, filament, print.
        """
        merged: dict[str, Any] = {}
        for source in sources:
            if source:
                merged.update(source)
        return cls(merged)

    def with_overrides(self, overrides: Mapping[str, Any]) -> ConfigEnvironment:
        """Return a copy with *overrides* applied on top."""
        merged: dict[str, Any] = dict(self._values)
        merged.update(overrides)
        return ConfigEnvironment(merged)

    # -- Mapping protocol --------------------------------------------------

    def __getitem__(self, key: str) -> tuple[str, ...]:
        return self._values[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"ConfigEnvironment({len(self._values)} keys)"

    # -- Accessors ---------------------------------------------------------

    def has_value(self, key: str, index: int = 0) -> bool:
        """Return ``True`` if *key* holds a non-empty element at *index*."""
        values = self._values.get(key, ())
        return index < len(values) and values[index].strip() != ""

    def scalar_at(self, key: str, index: int = 0, default: Any = _MISSING) -> str:
        """Return element *index* of *key* as a stripped string.

        Parameters
        ----------
        key : str
            Parameter name.
        index : int
            Element index (per-extruder position), default 0.
        default : Any
            Fallback used before the central defaults table.

        Raises
        ------
        ConfigError
            If the key is absent and has no default anywhere.
        """
        if self.has_value(key, index):
            return self._values[key][index].strip()
        if default is not _MISSING:
            return _to_text(default)
        fallback = default_for(key)
        if fallback is not None:
            return fallback
        raise ConfigError(f"Missing required configuration key: '{key}'")

    def float_at(self, key: str, index: int = 0, default: Any = _MISSING) -> float:
        """Return element *index* of *key* as a float."""
        raw = self.scalar_at(key, index, default)
        try:
            return float(raw)
        except ValueError as exc:
            raise ConfigError(
                f"Invalid numeric value for '{key}': {raw!r}"
            ) from exc

    def int_at(self, key: str, index: int = 0, default: Any = _MISSING) -> int:
        """Return element *index* of *key* as an int (``"2.0"`` -> 2)."""
        return int(self.float_at(key, index, default))

    def bool_at(self, key: str, index: int = 0, default: Any = _MISSING) -> bool:
        """Return element *index* of *key* as a bool (``1/true/yes/on``)."""
        return self.scalar_at(key, index, default).lower() in _TRUE_STRINGS

    def relative_at(
        self,
        key: str,
        base: float,
        index: int = 0,
        default: Any = _MISSING,
    ) -> float:
        """Return *key* as an absolute value, resolving ``%`` against *base*."""
        raw = self.scalar_at(key, index, default)
        try:
            return parse_relative(raw, base)
        except ConfigError as exc:
            raise ConfigError(f"Invalid value for '{key}': {exc}") from exc

    def text(self, key: str, default: str | None = None) -> str:
        """Return a free-text value (G-code snippet) unsplit and unstripped."""
        values = self._values.get(key)
        if values and any(v != "" for v in values):
            return ";".join(values)
        if default is not None:
            return default
        return default_for(key) or ""

    def as_variables(self) -> dict[str, list[str]]:
        """Return a mutable copy suitable for seeding a template environment."""
        return {k: list(v) for k, v in self._values.items()}


# ---------------------------------------------------------------------------
# Bed shape
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BedBounds:
    """Axis-aligned bounds of the printable bed in mm."""

    min_x: float
    min_y: float
    max_x: float
    max_y: float

    @property
    def width(self) -> float:
        return self.max_x - self.min_x

    @property
    def height(self) -> float:
        return self.max_y - self.min_y

    def contains(self, x: float, y: float, tol: float = 1e-6) -> bool:
        """Return ``True`` if (x, y) lies on the bed."""
        return (
            self.min_x - tol <= x <= self.max_x + tol
            and self.min_y - tol <= y <= self.max_y + tol
        )


def parse_bed_shape(bed_shape: str) -> BedBounds:
    """Parse a ``"0x0,250x0,250x210,0x210"`` point list into bounds.

    Raises
    ------
    ConfigError
        If the list is empty, a point is malformed, or the area is zero.
    """
    xs: list[float] = []
    ys: list[float] = []
    for point in str(bed_shape).split(","):
        point = point.strip()
        if not point:
            continue
        x_str, sep, y_str = point.partition("x")
        if not sep:
            raise ConfigError(f"Malformed bed_shape point {point!r}")
        try:
            xs.append(float(x_str))
            ys.append(float(y_str))
        except ValueError as exc:
            raise ConfigError(f"Malformed bed_shape point {point!r}") from exc

    if not xs:
        raise ConfigError(f"bed_shape has no points: {bed_shape!r}")

    bounds = BedBounds(min(xs), min(ys), max(xs), max(ys))
    if bounds.width <= 0 or bounds.height <= 0:
        raise ConfigError(f"bed_shape encloses no area: {bed_shape!r}")
    return bounds


# ---------------------------------------------------------------------------
# Profile files
# ---------------------------------------------------------------------------


def parse_ini_text(text: str) -> dict[str, str]:
    """Parse PrusaSlicer-style ``key = value`` profile text.

    Blank lines, ``#``/``;`` comments and ``[section]`` headers are
    skipped.  Surrounding double quotes are stripped.  Escaped ``\\n``
    sequences in G-code snippets become real newlines.
    """
    result: dict[str, str] = {}
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped or stripped[0] in "#;" or stripped.startswith("["):
            continue
        key, sep, value = stripped.partition("=")
        if not sep:
            logger.debug("Skipping profile line without '=': %r", stripped)
            continue
        key = key.strip()
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] == '"':
            value = value[1:-1]
        if is_text_key(key):
            value = value.replace("\\n", "\n")
        result[key] = value
    return result


def _read_profile_file(path: Path) -> dict[str, str]:
    if path.suffix.lower() in (".yaml", ".yml"):
        data = load_yaml(path)
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ConfigError(f"Profile {path} must contain a mapping")
        return {
            str(k): ";".join(_to_text(i) for i in v) if isinstance(v, list) else _to_text(v)
            for k, v in data.items()
        }
    return parse_ini_text(path.read_text(encoding="utf-8"))


class ProfileDirectory(Mapping[str, Mapping[str, str]]):
    """Lazy name -> profile map over a directory of ``.ini``/``.yaml`` files.

    Profiles are read on first access and cached.  *preloaded* entries
    take precedence over files.
    """

    _SUFFIXES = (".ini", ".yaml", ".yml")

    def __init__(
        self,
        directory: str | Path,
        preloaded: Mapping[str, Mapping[str, str]] | None = None,
    ) -> None:
        self._dir = Path(directory)
        self._cache: dict[str, Mapping[str, str]] = dict(preloaded or {})

    def _path_for(self, name: str) -> Path | None:
        for suffix in self._SUFFIXES:
            candidate = self._dir / f"{name}{suffix}"
            if candidate.exists():
                return candidate
        return None

    def __getitem__(self, name: str) -> Mapping[str, str]:
        if name not in self._cache:
            path = self._path_for(name)
            if path is None:
                raise KeyError(name)
            self._cache[name] = _read_profile_file(path)
        return self._cache[name]

    def __iter__(self) -> Iterator[str]:
        names = set(self._cache)
        if self._dir.is_dir():
            names.update(
                p.stem for p in self._dir.iterdir() if p.suffix.lower() in self._SUFFIXES
            )
        return iter(sorted(names))

    def __len__(self) -> int:
        return sum(1 for _ in self)


def _parents_of(profile: Mapping[str, str]) -> list[str]:
    raw = str(profile.get("inherits", "") or "")
    return [p.strip().strip('"') for p in raw.split(";") if p.strip()]


def resolve_inherits(
    name: str,
    profiles: Mapping[str, Mapping[str, str]],
) -> dict[str, str]:
    """Flatten the ``inherits`` chain of profile *name* into one map.

    Parents are applied before children, so the named profile's own keys
    win.  Several ``;``-separated parents are applied in listed order.
    The walk is iterative and guards against inheritance cycles.

    Parameters
    ----------
    name : str
        Profile to resolve.
    profiles : Mapping[str, Mapping[str, str]]
        All known profiles by name.

    Returns
    -------
    dict[str, str]
        Merged profile without the ``inherits`` key.

    Raises
    ------
    ConfigError
        On an unknown parent or a cycle.
    """
    order: list[str] = []
    done: set[str] = set()
    in_progress: set[str] = set()
    stack: list[tuple[str, bool]] = [(name, False)]

    while stack:
        current, finished = stack.pop()
        if finished:
            in_progress.discard(current)
            done.add(current)
            order.append(current)
            continue
        if current in done:
            continue
        if current in in_progress:
            raise ConfigError(
                f"Inheritance cycle detected at profile '{current}' "
                f"while resolving '{name}'"
            )
        try:
            profile = profiles[current]
        except KeyError as exc:
            raise ConfigError(
                f"Profile '{current}' not found while resolving '{name}'"
            ) from exc
        in_progress.add(current)
        stack.append((current, True))
        for parent in reversed(_parents_of(profile)):
            stack.append((parent, False))

    merged: dict[str, str] = {}
    for profile_name in order:
        merged.update(profiles[profile_name])
    merged.pop("inherits", None)
    logger.debug("Resolved profile '%s' through %s", name, " -> ".join(order))
    return merged


def load_profile(path: str | Path) -> dict[str, str]:
    """Load one profile file, following ``inherits`` to sibling files.

    Parameters
    ----------
    path : str | Path
        ``.ini`` (PrusaSlicer / SuperSlicer export) or ``.yaml`` profile.

    Returns
    -------
    dict[str, str]
        Flat key -> raw value map.

    Raises
    ------
    FileNotFoundError
        If *path* does not exist.
    ConfigError
        If the file is malformed or its inheritance chain is broken.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Profile not found: {path}")

    logger.info("Loading profile %s", path)
    profile = _read_profile_file(path)
    if not _parents_of(profile):
        profile.pop("inherits", None)
        return profile

    profiles = ProfileDirectory(path.parent, preloaded={path.stem: profile})
    return resolve_inherits(path.stem, profiles)
