"""Faceted filtering and free-text search over an in-memory experience list."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Sequence

from experiencehub.errors import UnknownFacetError
from experiencehub.models import Experience


class _AnyValue:
    """Marker for "no constraint"; never equal to a value found in data."""

    _instance: "_AnyValue | None" = None

    def __new__(cls) -> "_AnyValue":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "ANY"


ANY: Any = _AnyValue()


@dataclass(slots=True, frozen=True)
class FacetSpec:
    name: str
    getter: Callable[[Experience], Any]
    substring: bool = False
    numeric: bool = False

    def raw(self, record: Experience) -> Any:
        return self.getter(record)

    def matches(self, record: Experience, selection: Any) -> bool:
        value = self.raw(record)
        text = "" if value is None else str(value)
        if self.substring:
            needle = str(selection)
            # A blank selection asks for blank fields, as with exact facets.
            if not needle.strip():
                return not text.strip()
            return needle.casefold() in text.casefold()
        return text == str(selection)


FACETS: Dict[str, FacetSpec] = {
    spec.name: spec
    for spec in (
        FacetSpec("company", lambda r: r.company_name),
        FacetSpec("experience_type", lambda r: r.experience_type),
        FacetSpec("assessment_type", lambda r: r.assessment_type),
        FacetSpec("result", lambda r: r.result),
        FacetSpec("graduating_year", lambda r: r.graduating_year, numeric=True),
        FacetSpec("branch", lambda r: r.branch, substring=True),
    )
}


def _facet(name: str) -> FacetSpec:
    try:
        return FACETS[name]
    except KeyError:
        raise UnknownFacetError(name) from None


@dataclass(slots=True, frozen=True)
class FilterState:
    """Search text plus one selection per facet (ANY when unconstrained)."""

    search_text: str = ""
    selections: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        for name in self.selections:
            _facet(name)

    def selection(self, name: str) -> Any:
        _facet(name)
        return self.selections.get(name, ANY)

    def with_search(self, text: str) -> "FilterState":
        return FilterState(search_text=text, selections=dict(self.selections))

    def with_facet(self, name: str, value: Any) -> "FilterState":
        selections = dict(self.selections)
        if value is ANY:
            selections.pop(_facet(name).name, None)
        else:
            selections[_facet(name).name] = value
        return FilterState(search_text=self.search_text, selections=selections)

    @property
    def active_facets(self) -> Dict[str, Any]:
        return {name: value for name, value in self.selections.items() if value is not ANY}


def matches_search(record: Experience, query: str) -> bool:
    """True when the (already trimmed) query appears in any searchable field."""
    needle = query.casefold()
    return any(needle in value.casefold() for value in record.searchable_fields())


def apply_filters(records: Iterable[Experience], state: FilterState) -> List[Experience]:
    """Return a new list with the records matching search text and every facet.

    Source order is preserved and the input is never modified.
    """
    query = state.search_text.strip()
    active = [(_facet(name), value) for name, value in state.active_facets.items()]

    filtered: List[Experience] = []
    for record in records:
        if query and not matches_search(record, query):
            continue
        if all(spec.matches(record, value) for spec, value in active):
            filtered.append(record)
    return filtered


def facet_values(records: Iterable[Experience], name: str) -> List[Any]:
    """Distinct non-blank values of a facet across the full source list."""
    spec = _facet(name)
    seen = set()
    for record in records:
        value = spec.raw(record)
        if value is None or str(value).strip() == "":
            continue
        seen.add(value if spec.numeric else str(value))
    if spec.numeric:
        return sorted(seen, key=lambda v: (float(v), str(v)))
    return sorted(seen)


class FilterEngine:
    """Holds the fetched experiences and the current filtered view.

    The view is recomputed from scratch whenever the source list, the search
    text or a facet selection changes.
    """

    def __init__(self, records: Sequence[Experience] = (), state: FilterState | None = None) -> None:
        self._source: tuple[Experience, ...] = tuple(records)
        self._state = state or FilterState()
        self._view: List[Experience] = []
        self._recompute()

    @property
    def source(self) -> tuple[Experience, ...]:
        return self._source

    @property
    def state(self) -> FilterState:
        return self._state

    @property
    def view(self) -> List[Experience]:
        return list(self._view)

    def _recompute(self) -> None:
        self._view = apply_filters(self._source, self._state)

    def replace_source(self, records: Sequence[Experience]) -> List[Experience]:
        self._source = tuple(records)
        self._recompute()
        return self.view

    def set_search(self, text: str) -> List[Experience]:
        self._state = self._state.with_search(text)
        self._recompute()
        return self.view

    def set_facet(self, name: str, value: Any) -> List[Experience]:
        self._state = self._state.with_facet(name, value)
        self._recompute()
        return self.view

    def clear_facet(self, name: str) -> List[Experience]:
        return self.set_facet(name, ANY)

    def apply(self, state: FilterState) -> List[Experience]:
        self._state = state
        self._recompute()
        return self.view

    def facet_values(self, name: str) -> List[Any]:
        return facet_values(self._source, name)

    def all_facet_values(self) -> Dict[str, List[Any]]:
        return {name: facet_values(self._source, name) for name in FACETS}
