from __future__ import annotations

from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from dealflow.cache.display import NO_COMPANY, NO_CONTACT, UNKNOWN_STAGE, DisplayResolver
from dealflow.cache.store import CacheRegistry, ReadModelCache, insert_at, remove_record
from dealflow.crm.schemas import CompanyRead, ContactRead, DealView, PipelineConfig, apply_changes


def _deal(deal_id: str, **overrides: object) -> DealView:
    values: dict[str, object] = {"id": deal_id, "pipeline_id": "p1", "stage_id": "s1", "title": f"Deal {deal_id}"}
    values.update(overrides)
    return DealView.model_validate(values)


def test_registry_returns_single_cache_per_dataset() -> None:
    registry = CacheRegistry()

    first = registry.get("deals")
    second = registry.get("deals")
    other = registry.get("archived-deals")

    assert first is second
    assert first is not other
    assert registry.keys() == ["archived-deals", "deals"]


def test_cache_is_unloaded_until_first_load() -> None:
    cache = ReadModelCache("deals")

    assert cache.read() is None
    assert not cache.is_loaded
    assert cache.get("a") is None

    cache.load([_deal("a"), _deal("b")])

    assert cache.is_loaded
    assert [item.id for item in cache.read() or ()] == ["a", "b"]
    assert cache.get("b") is not None
    assert cache.index_of("b") == 1


def test_write_applies_updater_to_previous_sequence() -> None:
    cache = ReadModelCache("deals")
    cache.load([_deal("a")])
    version = cache.version

    result = cache.write(lambda items: (*(items or ()), _deal("b")))

    assert [item.id for item in result or ()] == ["a", "b"]
    assert cache.read() == result
    assert cache.version == version + 1


def test_updater_may_leave_cache_unloaded() -> None:
    cache = ReadModelCache("deals")

    assert cache.write(lambda items: None if items is None else (*items, _deal("a"))) is None
    assert cache.read() is None


def test_failing_updater_leaves_cache_untouched() -> None:
    cache = ReadModelCache("deals")
    cache.load([_deal("a")])
    before = cache.read()

    def _broken(items: object) -> tuple[DealView, ...]:
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        cache.write(_broken)

    assert cache.read() is before


def test_sequence_helpers_clamp_positions() -> None:
    items = (_deal("a"), _deal("b"))

    assert [item.id for item in insert_at(items, 10, _deal("c"))] == ["a", "b", "c"]
    assert [item.id for item in insert_at(items, -1, _deal("c"))] == ["c", "a", "b"]
    assert [item.id for item in remove_record(items, "a")] == ["b"]


def test_view_record_rejects_won_and_lost_together() -> None:
    closed_at = datetime.now(timezone.utc)

    with pytest.raises(ValidationError):
        _deal("a", is_won=True, is_lost=True, closed_at=closed_at)
    with pytest.raises(ValidationError):
        _deal("a", is_won=True)
    with pytest.raises(ValidationError):
        _deal("a", closed_at=closed_at)

    won = apply_changes(_deal("a"), {"is_won": True, "closed_at": closed_at})
    assert won.is_won and won.closed_at == closed_at


def test_resolver_fills_display_fields_with_fallbacks() -> None:
    resolver = DisplayResolver()
    resolver.remember_pipelines(
        [PipelineConfig(id="p1", name="Sales", stages=[{"id": "s1", "label": "New", "position": 0}])]
    )
    resolver.remember_contacts([ContactRead(id="c1", name="Ada", email="ada@example.com")])
    resolver.remember_companies([CompanyRead(id="co1", name="Acme")])

    resolved = resolver.resolve(_deal("a", contact_id="c1", company_id="co1"))
    unresolved = resolver.resolve(_deal("b", stage_id="missing", contact_id="c404"))

    assert (resolved.company_name, resolved.contact_name, resolved.contact_email, resolved.stage_label) == (
        "Acme",
        "Ada",
        "ada@example.com",
        "New",
    )
    assert (unresolved.company_name, unresolved.contact_name, unresolved.stage_label) == (
        NO_COMPANY,
        NO_CONTACT,
        UNKNOWN_STAGE,
    )
