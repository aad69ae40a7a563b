from __future__ import annotations

import json
import random
from contextlib import contextmanager
from typing import Any

import pytest

from mcp_servers.cdp_mission.errors import MissionConfigError
from mcp_servers.cdp_mission.mission import (
    DEFAULT_HANDLERS,
    HUMAN_PAUSES,
    MISSION_KINDS,
    MissionKind,
    MissionRunner,
    MissionStep,
    load_mission,
    mission_templates,
)


class DummyPage:
    def __init__(self, texts: dict[str, list[str]] | None = None, present: set[str] | None = None) -> None:
        self.texts = texts or {}
        self.present = present if present is not None else set()
        self.calls: list[tuple[str, Any]] = []

    def enable_domains(self, *methods: str) -> None:
        self.calls.append(("enable", methods))

    def navigate(self, url: str) -> dict[str, Any]:
        self.calls.append(("navigate", url))
        return {}

    def query_texts(self, selectors: list[str]) -> dict[str, list[str]]:
        self.calls.append(("query", list(selectors)))
        return {sel: self.texts.get(sel, []) for sel in selectors}

    def set_value(self, selector: str, value: str) -> bool:
        self.calls.append(("set", (selector, value)))
        return selector in self.present

    def click(self, selector: str) -> bool:
        self.calls.append(("click", selector))
        return selector in self.present

    def press_key(self, key: str) -> None:
        self.calls.append(("key", key))


def _page_factory(page: DummyPage, opened: list[str]):
    @contextmanager
    def factory(_config):
        opened.append("open")
        try:
            yield page
        finally:
            opened.append("close")

    return factory


def _runner(config, **kwargs: Any) -> MissionRunner:
    kwargs.setdefault("sleep", lambda _s: None)
    kwargs.setdefault("rng", random.Random(3))
    return MissionRunner(config, **kwargs)


def test_load_mission_merges_nested_config() -> None:
    spec = load_mission(
        {
            "type": "google_search",
            "url": "https://www.google.com",
            "objective": "Search for phones",
            "searchQuery": "iPhone 16 Pro Max 512GB",
            "config": {"waitForResults": True, "extractTopResults": 10},
        }
    )
    assert spec.kind == "google_search"
    assert spec.url == "https://www.google.com"
    assert spec.objective == "Search for phones"
    assert spec.options["searchQuery"] == "iPhone 16 Pro Max 512GB"
    assert spec.options["extractTopResults"] == 10
    assert "url" not in spec.options


def test_load_mission_rejects_unknown_type() -> None:
    with pytest.raises(MissionConfigError, match="Unknown mission type"):
        load_mission({"type": "ecommerce", "url": "https://shop.example"})


def test_load_mission_reports_missing_fields() -> None:
    with pytest.raises(MissionConfigError) as excinfo:
        load_mission({"type": "scraping", "url": "https://a.example", "selectors": []})
    assert "selectors" in str(excinfo.value)
    assert "output" in str(excinfo.value)


def test_runner_rejects_step_without_handler(fast_config) -> None:
    kinds = {"broken": MissionKind("broken", "x", ("url",), (MissionStep("teleport", "nope"),))}
    with pytest.raises(MissionConfigError, match="teleport"):
        _runner(fast_config, kinds=kinds)


def test_runner_rejects_unknown_pause(fast_config) -> None:
    kinds = {"odd": MissionKind("odd", "x", ("url",), (MissionStep("navigate", "go", pause="nap"),))}
    with pytest.raises(MissionConfigError, match="pause"):
        _runner(fast_config, kinds=kinds)


def test_builtin_kinds_are_consistent() -> None:
    for kind in MISSION_KINDS.values():
        assert "url" in kind.required_fields
        for step in kind.steps:
            assert step.action in DEFAULT_HANDLERS
            assert step.pause in HUMAN_PAUSES
    names = [t["type"] for t in mission_templates()]
    assert names == list(MISSION_KINDS)


def test_google_search_mission_runs_search_session(fast_config) -> None:
    created: list[dict[str, Any]] = []

    class DummySession:
        def __init__(self, config, **kwargs: Any) -> None:  # noqa: ARG002
            created.append(kwargs)

        def run(self) -> dict[str, Any]:
            return {"totalResults": 3}

    spec = load_mission({"type": "google_search", "url": "https://www.google.com", "searchQuery": "phones"})
    report = _runner(fast_config, session_factory=DummySession).execute(spec)

    assert report["success"] is True
    assert report["results"] == [{"action": "search", "ok": True, "result": {"totalResults": 3}}]
    assert report["evaluation"] == {"total": 1, "succeeded": 1, "failed": 0, "successRate": 100.0}
    assert created[0]["query"] == "phones"
    assert created[0]["target_url"] == "https://www.google.com"


def test_scraping_mission_extracts_and_saves(fast_config, tmp_path) -> None:
    out = tmp_path / "out" / "data.json"
    page = DummyPage(texts={"h1": ["Title"], ".price": ["$10", "$20"]})
    opened: list[str] = []
    spec = load_mission(
        {"type": "scraping", "url": "https://a.example", "selectors": ["h1", ".price"], "output": str(out)}
    )

    report = _runner(fast_config, page_factory=_page_factory(page, opened)).execute(spec)

    assert report["success"] is True
    assert [r["action"] for r in report["results"]] == ["navigate", "extract", "save"]
    assert json.loads(out.read_text(encoding="utf-8")) == {"h1": ["Title"], ".price": ["$10", "$20"]}
    # One page channel for the whole mission, released at the end.
    assert opened == ["open", "close"]
    assert page.calls[0][0] == "enable"
    assert ("navigate", "https://a.example") in page.calls


def test_failed_step_is_recorded_and_later_steps_still_run(fast_config) -> None:
    page = DummyPage(present={"#name", "button[type=submit]"})
    opened: list[str] = []
    spec = load_mission(
        {
            "type": "automation",
            "url": "https://form.example",
            "formData": {"#name": "Ann", "#missing": "x"},
            "submitAction": "button[type=submit]",
        }
    )

    report = _runner(fast_config, page_factory=_page_factory(page, opened)).execute(spec)

    assert report["success"] is False
    by_action = {r["action"]: r for r in report["results"]}
    assert by_action["fill"]["ok"] is False
    assert "#missing" in by_action["fill"]["error"]
    assert by_action["submit"]["ok"] is True
    assert report["evaluation"]["failed"] == 1
    assert report["evaluation"]["successRate"] == pytest.approx(66.7)
    assert opened == ["open", "close"]


def test_monitoring_mission_raises_alerts(fast_config) -> None:
    page = DummyPage(texts={"#status": ["Out of stock"], "#price": ["$999"]})
    spec = load_mission(
        {
            "type": "monitoring",
            "url": "https://shop.example/item",
            "watchElements": ["#status", "#price"],
            "alertConditions": {"#status": "In stock", "#price": "$999"},
        }
    )

    report = _runner(fast_config, page_factory=_page_factory(page, [])).execute(spec)

    check = report["results"][-1]
    assert check["action"] == "check"
    assert check["result"]["alerts"] == [{"selector": "#price", "match": "$999"}]


def test_human_pauses_stay_in_range(fast_config) -> None:
    slept: list[float] = []
    runner = _runner(fast_config, sleep=slept.append, rng=random.Random(11))
    for kind, (low, high) in HUMAN_PAUSES.items():
        for _ in range(20):
            seconds = runner.human_pause(kind)
            assert low / 1000.0 <= seconds < high / 1000.0
    assert len(slept) == 20 * len(HUMAN_PAUSES)


def test_page_unavailable_fails_steps_not_the_runner(fast_config) -> None:
    from mcp_servers.cdp_mission.errors import DiscoveryError

    @contextmanager
    def no_page(_config):
        raise DiscoveryError("No browser tabs available")
        yield  # pragma: no cover

    spec = load_mission({"type": "monitoring", "url": "https://a.example", "watchElements": ["h1"], "alertConditions": {"h1": "x"}})
    report = _runner(fast_config, page_factory=no_page).execute(spec)

    assert report["success"] is False
    assert report["results"][0] == {"action": "navigate", "ok": False, "error": "No browser tabs available"}


def test_every_template_example_loads() -> None:
    for template in mission_templates():
        spec = load_mission(template["example"])
        assert spec.kind == template["type"]


def test_automation_without_submit_action_presses_enter(fast_config) -> None:
    page = DummyPage(present={'[name="name"]', '[name="email"]'})
    spec = load_mission(
        {"type": "automation", "url": "https://forms.example.com", "formData": {"name": "John", "email": "j@example.com"}}
    )

    report = _runner(fast_config, page_factory=_page_factory(page, [])).execute(spec)

    assert report["success"] is True
    assert ("set", ('[name="name"]', "John")) in page.calls
    assert page.calls[-1] == ("key", "Enter")


def test_monitoring_without_alert_conditions_checks_nothing(fast_config) -> None:
    page = DummyPage(texts={".breaking": ["Storm"]})
    spec = load_mission({"type": "monitoring", "url": "https://news.example.com", "watchElements": [".breaking"]})

    report = _runner(fast_config, page_factory=_page_factory(page, [])).execute(spec)

    assert report["success"] is True
    assert report["results"][-1]["result"] == {"alerts": [], "checked": 0}


def test_scraping_named_selectors_query_css_and_key_by_name(fast_config, tmp_path) -> None:
    out = tmp_path / "data.json"
    page = DummyPage(texts={".product": ["Phone A", "Phone B"]})
    spec = load_mission(
        {"type": "scraping", "url": "https://example.com", "selectors": {"products": ".product"}, "output": str(out)}
    )

    report = _runner(fast_config, page_factory=_page_factory(page, [])).execute(spec)

    assert report["success"] is True
    assert [c for c in page.calls if c[0] == "query"] == [("query", [".product"])]
    assert json.loads(out.read_text(encoding="utf-8")) == {"products": ["Phone A", "Phone B"]}


@pytest.mark.parametrize(
    ("payload", "field"),
    [
        ({"type": "automation", "url": "https://f.example", "formData": ["name", "email"]}, "formData"),
        ({"type": "monitoring", "url": "https://m.example", "watchElements": ["h1"], "alertConditions": ["x"]}, "alertConditions"),
        ({"type": "scraping", "url": "https://s.example", "selectors": ".product", "output": "o.json"}, "selectors"),
        ({"type": "scraping", "url": "https://s.example", "selectors": [1, 2], "output": "o.json"}, "selectors"),
        ({"type": "shopping", "url": "https://shop.example", "product": "iPhone", "maxPrice": "cheap"}, "maxPrice"),
    ],
)
def test_load_mission_rejects_wrong_option_shapes(payload: dict[str, Any], field: str) -> None:
    with pytest.raises(MissionConfigError, match=field):
        load_mission(payload)


def test_unexpected_step_error_is_recorded(fast_config) -> None:
    def broken(runner, spec, step):  # noqa: ANN001, ANN202, ARG001
        raise ValueError("bad option shape")

    handlers = {**DEFAULT_HANDLERS, "fill": broken}
    page = DummyPage()
    spec = load_mission({"type": "automation", "url": "https://f.example", "formData": {"#a": "1"}})

    report = _runner(fast_config, handlers=handlers, page_factory=_page_factory(page, [])).execute(spec)

    assert report["success"] is False
    fill = next(r for r in report["results"] if r["action"] == "fill")
    assert fill == {"action": "fill", "ok": False, "error": "ValueError: bad option shape"}
    assert report["results"][-1]["action"] == "submit"


def test_shopping_mission_searches_and_filters_offers(fast_config) -> None:
    page = DummyPage(
        texts={".product": ["iPhone 15 $799", "iPhone 16 Pro $1,199.00", "Case (price on request)"]},
        present={'input[name="q"]'},
    )
    spec = load_mission({"type": "shopping", "url": "https://shop.example.com", "product": "iPhone", "maxPrice": 1000})

    report = _runner(fast_config, page_factory=_page_factory(page, [])).execute(spec)

    assert report["success"] is True
    assert [r["action"] for r in report["results"]] == ["navigate", "search_product", "offers"]
    assert ("set", ('input[name="q"]', "iPhone")) in page.calls
    assert ("key", "Enter") in page.calls
    assert report["results"][-1]["result"] == {"offers": [{"text": "iPhone 15 $799", "price": 799.0}], "seen": 3}
    # Nothing past the offer list: no clicks into a cart or checkout.
    assert not [c for c in page.calls if c[0] == "click"]


def test_shopping_without_search_box_fails_that_step(fast_config) -> None:
    page = DummyPage(texts={".product": ["A $5"]})
    spec = load_mission({"type": "shopping", "url": "https://shop.example.com", "product": "iPhone"})

    report = _runner(fast_config, page_factory=_page_factory(page, [])).execute(spec)

    by_action = {r["action"]: r for r in report["results"]}
    assert by_action["search_product"] == {"action": "search_product", "ok": False, "error": "Search box not found"}
    assert by_action["offers"]["result"]["offers"] == [{"text": "A $5", "price": 5.0}]
