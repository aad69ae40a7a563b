"""Mission pipeline: analyze -> plan -> execute with human pauses -> evaluate.

Each mission kind maps to a fixed, ordered step table. Mission files are
checked against the table when loaded, and the table against the step
handlers when a runner is built, so a typo fails before any browser work.
"""

from __future__ import annotations

import json
import random
import re
import time
from collections.abc import Callable, Mapping
from contextlib import ExitStack
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .config import MissionConfig
from .errors import InputNotFound, MissionConfigError, MissionError
from .page import PageClient, open_page
from .session_driver import REQUIRED_DOMAINS, SearchSession
from .session_log import SessionLog, attached, new_session_id, session_logger


# Milliseconds, sampled uniformly.
HUMAN_PAUSES: dict[str, tuple[float, float]] = {
    "thinking": (500.0, 2000.0),
    "typing": (50.0, 150.0),
    "mouse": (100.0, 300.0),
    "scroll": (200.0, 500.0),
    "micro-break": (100.0, 500.0),
}

MICRO_BREAK_PROBABILITY = 0.3


@dataclass(frozen=True)
class MissionStep:
    action: str
    description: str
    pause: str = "thinking"


@dataclass(frozen=True)
class MissionKind:
    name: str
    description: str
    required_fields: tuple[str, ...]
    steps: tuple[MissionStep, ...]
    example: Mapping[str, Any] = field(default_factory=dict)


@dataclass
class MissionSpec:
    kind: str
    url: str
    objective: str = ""
    options: dict[str, Any] = field(default_factory=dict)


MISSION_KINDS: dict[str, MissionKind] = {
    "google_search": MissionKind(
        name="google_search",
        description="Search a query on a search engine and extract the results",
        required_fields=("url", "searchQuery"),
        steps=(MissionStep("search", "Type the query with human cadence and extract results", "thinking"),),
        example={
            "type": "google_search",
            "url": "https://www.google.com",
            "objective": "Search for phones",
            "searchQuery": "iPhone 16 Pro Max 512GB",
        },
    ),
    "scraping": MissionKind(
        name="scraping",
        description="Extract data from website",
        required_fields=("url", "selectors", "output"),
        steps=(
            MissionStep("navigate", "Open the target page", "thinking"),
            MissionStep("extract", "Read text of every selector", "scroll"),
            MissionStep("save", "Write extracted data to the output file", "micro-break"),
        ),
        example={
            "type": "scraping",
            "url": "https://example.com",
            "objective": "Extract product data",
            "selectors": {"products": ".product"},
            "output": "data.json",
        },
    ),
    "automation": MissionKind(
        name="automation",
        description="Fill and submit forms",
        required_fields=("url", "formData"),
        steps=(
            MissionStep("navigate", "Open the form page", "thinking"),
            MissionStep("fill", "Fill every form field", "typing"),
            MissionStep("submit", "Trigger the submit action (default: Enter)", "mouse"),
        ),
        example={
            "type": "automation",
            "url": "https://forms.example.com",
            "objective": "Fill contact form",
            "formData": {"name": "John", "email": "john@example.com"},
        },
    ),
    "shopping": MissionKind(
        name="shopping",
        description="Find a product and list offers under a price cap (stops before checkout)",
        required_fields=("url", "product"),
        steps=(
            MissionStep("navigate", "Open the shop", "thinking"),
            MissionStep("search_product", "Enter the product into the shop search box", "typing"),
            MissionStep("offers", "Read listed offers and keep those within maxPrice", "scroll"),
        ),
        example={
            "type": "shopping",
            "url": "https://shop.example.com",
            "objective": "Find an iPhone offer",
            "product": "iPhone",
            "maxPrice": 1000,
        },
    ),
    "monitoring": MissionKind(
        name="monitoring",
        description="Monitor website changes",
        required_fields=("url", "watchElements"),
        steps=(
            MissionStep("navigate", "Open the watched page", "thinking"),
            MissionStep("extract", "Read text of every watched element", "scroll"),
            MissionStep("check", "Evaluate alert conditions", "micro-break"),
        ),
        example={
            "type": "monitoring",
            "url": "https://news.example.com",
            "objective": "Watch for breaking news",
            "watchElements": [".breaking"],
            "interval": 300,
        },
    ),
}

DEFAULT_SUBMIT_ACTION = "Enter"
DEFAULT_OFFER_SELECTOR = ".product"

# Option name -> accepted types, checked at load time when the option is present.
OPTION_TYPES: dict[str, tuple[type, ...]] = {
    "selectors": (Mapping, list),
    "watchElements": (Mapping, list),
    "formData": (Mapping,),
    "alertConditions": (Mapping,),
    "submitAction": (str,),
    "searchQuery": (str,),
    "product": (str,),
    "maxPrice": (int, float),
}

_CURRENCY_PRICE_RE = re.compile(r"[$€£]\s*(\d[\d,]*(?:\.\d+)?)")
_NUMBER_RE = re.compile(r"\d[\d,]*(?:\.\d+)?")
_FIELD_NAME_RE = re.compile(r"[A-Za-z_][\w-]*")


def selector_map(value: Mapping[str, Any] | list[Any]) -> dict[str, str]:
    """Name -> CSS selector. A plain list uses each selector as its own name."""
    if isinstance(value, Mapping):
        return {str(name): str(css) for name, css in value.items()}
    return {str(css): str(css) for css in value}


def field_selector(key: str) -> str:
    """Form field key -> CSS selector. A bare name such as `email` matches `[name="email"]`."""
    if _FIELD_NAME_RE.fullmatch(key):
        return f"[name={json.dumps(key)}]"
    return key


def parse_price(text: str) -> float | None:
    """Currency-marked amount, else the last number in the text (model numbers come first)."""
    match = _CURRENCY_PRICE_RE.search(text)
    if match is not None:
        return float(match.group(1).replace(",", ""))
    numbers = _NUMBER_RE.findall(text)
    if not numbers:
        return None
    return float(numbers[-1].replace(",", ""))


StepHandler = Callable[["MissionRunner", MissionSpec, MissionStep], Any]


# ─────────────────────────────────────────────────────────────────────────────
# Step handlers
# ─────────────────────────────────────────────────────────────────────────────


def _step_search(runner: MissionRunner, spec: MissionSpec, step: MissionStep) -> Any:
    session = runner.session_factory(
        runner.config,
        query=str(spec.options["searchQuery"]),
        target_url=spec.url,
        rng=runner.rng,
        session_id=runner.session_id,
    )
    return session.run()


def _step_navigate(runner: MissionRunner, spec: MissionSpec, step: MissionStep) -> Any:
    page = runner.page()
    page.navigate(spec.url)
    runner.sleep(runner.config.nav_settle_ms / 1000.0)
    return {"url": spec.url}


def _step_extract(runner: MissionRunner, spec: MissionSpec, step: MissionStep) -> Any:
    named = selector_map(spec.options.get("selectors") or spec.options.get("watchElements") or [])
    texts = runner.page().query_texts(list(dict.fromkeys(named.values())))
    data = {name: texts.get(css, []) for name, css in named.items()}
    runner.extracted.update(data)
    return data


def _step_save(runner: MissionRunner, spec: MissionSpec, step: MissionStep) -> Any:
    path = Path(str(spec.options["output"])).expanduser()
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(runner.extracted, ensure_ascii=False, indent=2), encoding="utf-8")
    except OSError as exc:
        raise MissionError(f"Cannot write {path}: {exc}") from exc
    return {"output": str(path), "selectors": len(runner.extracted)}


def _step_fill(runner: MissionRunner, spec: MissionSpec, step: MissionStep) -> Any:
    page = runner.page()
    missing: list[str] = []
    for key, value in dict(spec.options["formData"]).items():
        if not page.set_value(field_selector(str(key)), str(value)):
            missing.append(str(key))
        runner.human_pause("typing")
    if missing:
        raise MissionError(f"Form fields not found: {', '.join(missing)}")
    return {"filled": len(spec.options["formData"])}


def _step_submit(runner: MissionRunner, spec: MissionSpec, step: MissionStep) -> Any:
    page = runner.page()
    action = str(spec.options.get("submitAction") or DEFAULT_SUBMIT_ACTION)
    # A bare key name presses the key; anything else is a selector to click.
    if action in {"Enter", "Tab", "Escape"}:
        page.press_key(action)
        return {"key": action}
    if not page.click(action):
        raise MissionError(f"Submit element not found: {action}")
    return {"clicked": action}


def _step_check(runner: MissionRunner, spec: MissionSpec, step: MissionStep) -> Any:
    conditions = dict(spec.options.get("alertConditions") or {})
    alerts: list[dict[str, Any]] = []
    for selector, expected in conditions.items():
        texts = runner.extracted.get(selector, [])
        if any(str(expected) in text for text in texts):
            alerts.append({"selector": selector, "match": expected})
    return {"alerts": alerts, "checked": len(conditions)}


def _step_search_product(runner: MissionRunner, spec: MissionSpec, step: MissionStep) -> Any:
    page = runner.page()
    product = str(spec.options["product"])
    search_selector = spec.options.get("searchSelector")
    selectors = [str(search_selector)] if search_selector else list(runner.config.input_selectors)
    for selector in selectors:
        if page.set_value(selector, product):
            runner.human_pause("thinking")
            page.press_key(DEFAULT_SUBMIT_ACTION)
            runner.sleep(runner.config.results_settle_ms / 1000.0)
            return {"selector": selector, "product": product}
    raise InputNotFound(selectors)


def _step_offers(runner: MissionRunner, spec: MissionSpec, step: MissionStep) -> Any:
    selector = str(spec.options.get("offerSelector") or DEFAULT_OFFER_SELECTOR)
    max_price = spec.options.get("maxPrice")
    texts = runner.page().query_texts([selector]).get(selector, [])
    offers: list[dict[str, Any]] = []
    for text in texts:
        price = parse_price(text)
        if max_price is not None and (price is None or price > float(max_price)):
            continue
        offers.append({"text": text, "price": price})
    runner.extracted["offers"] = offers
    return {"offers": offers, "seen": len(texts)}


DEFAULT_HANDLERS: dict[str, StepHandler] = {
    "search": _step_search,
    "navigate": _step_navigate,
    "extract": _step_extract,
    "save": _step_save,
    "fill": _step_fill,
    "submit": _step_submit,
    "check": _step_check,
    "search_product": _step_search_product,
    "offers": _step_offers,
}


# ─────────────────────────────────────────────────────────────────────────────
# Loading
# ─────────────────────────────────────────────────────────────────────────────


def validate_kinds(kinds: Mapping[str, MissionKind], handlers: Mapping[str, StepHandler]) -> None:
    """Every step of every kind must have a handler and a known pause kind."""
    for name, kind in kinds.items():
        if not kind.steps:
            raise MissionConfigError(f"Mission kind {name!r} has no steps")
        for step in kind.steps:
            if step.action not in handlers:
                raise MissionConfigError(f"Mission kind {name!r}: no handler for step {step.action!r}")
            if step.pause not in HUMAN_PAUSES:
                raise MissionConfigError(f"Mission kind {name!r}: unknown pause {step.pause!r}")


def load_mission(data: Mapping[str, Any], kinds: Mapping[str, MissionKind] = MISSION_KINDS) -> MissionSpec:
    """Build a MissionSpec from a mapping such as a parsed JSON mission file.

    Required fields may sit at the top level or inside the nested `config` mapping.
    """
    if not isinstance(data, Mapping):
        raise MissionConfigError("Mission must be a mapping")
    kind_name = data.get("type")
    if not isinstance(kind_name, str) or kind_name not in kinds:
        known = ", ".join(sorted(kinds))
        raise MissionConfigError(f"Unknown mission type {kind_name!r} (known: {known})")
    kind = kinds[kind_name]

    nested = data.get("config") if isinstance(data.get("config"), Mapping) else {}
    options: dict[str, Any] = {**nested, **{k: v for k, v in data.items() if k not in {"type", "config"}}}

    missing = [f for f in kind.required_fields if options.get(f) in (None, "", [], {})]
    if missing:
        raise MissionConfigError(f"Mission {kind_name!r} is missing required field(s): {', '.join(missing)}")
    _check_option_types(kind_name, options)

    url = options.pop("url")
    if not isinstance(url, str):
        raise MissionConfigError("Mission url must be a string")
    objective = str(options.pop("objective", "") or "")
    return MissionSpec(kind=kind_name, url=url, objective=objective, options=options)


def _check_option_types(kind_name: str, options: Mapping[str, Any]) -> None:
    for name, types in OPTION_TYPES.items():
        value = options.get(name)
        if value is None:
            continue
        # bool is an int subclass; a price cap of `true` is a typo, not a number.
        if isinstance(value, bool) or not isinstance(value, types):
            expected = " or ".join("mapping" if t is Mapping else t.__name__ for t in types)
            raise MissionConfigError(
                f"Mission {kind_name!r}: {name} must be {expected}, got {type(value).__name__}"
            )
        if isinstance(value, list) and not all(isinstance(item, str) for item in value):
            raise MissionConfigError(f"Mission {kind_name!r}: {name} must be a list of selector strings")


def mission_templates(kinds: Mapping[str, MissionKind] = MISSION_KINDS) -> list[dict[str, Any]]:
    return [
        {
            "type": kind.name,
            "description": kind.description,
            "requiredFields": list(kind.required_fields),
            "steps": [step.action for step in kind.steps],
            "example": dict(kind.example),
        }
        for kind in kinds.values()
    ]


# ─────────────────────────────────────────────────────────────────────────────
# Runner
# ─────────────────────────────────────────────────────────────────────────────


class MissionRunner:
    """Execute one mission at a time; a page channel is opened only when a step needs it."""

    def __init__(
        self,
        config: MissionConfig,
        *,
        kinds: Mapping[str, MissionKind] = MISSION_KINDS,
        handlers: Mapping[str, StepHandler] | None = None,
        rng: random.Random | None = None,
        sleep: Callable[[float], None] = time.sleep,
        session_factory: Callable[..., SearchSession] = SearchSession,
        page_factory: Callable[[MissionConfig], Any] = open_page,
        log: SessionLog | None = None,
    ) -> None:
        self.config = config
        self.kinds = dict(kinds)
        self.handlers = dict(DEFAULT_HANDLERS if handlers is None else handlers)
        validate_kinds(self.kinds, self.handlers)
        self.rng = rng or random.Random()
        self.sleep = sleep
        self.session_factory = session_factory
        self.page_factory = page_factory
        self.log = log
        self.session_id = new_session_id()
        self.logger = session_logger(self.session_id)
        self.extracted: dict[str, Any] = {}
        self._stack: ExitStack | None = None
        self._page: PageClient | None = None

    def page(self) -> PageClient:
        if self._page is None:
            if self._stack is None:
                raise MissionError("No mission is running")
            page = self._stack.enter_context(self.page_factory(self.config))
            page.enable_domains(*REQUIRED_DOMAINS)
            self._page = page
        return self._page

    def human_pause(self, kind: str = "thinking") -> float:
        low, high = HUMAN_PAUSES.get(kind, HUMAN_PAUSES["thinking"])
        seconds = (low + self.rng.random() * (high - low)) / 1000.0
        self.sleep(seconds)
        return seconds

    def execute(self, spec: MissionSpec) -> dict[str, Any]:
        with attached(self.log), ExitStack() as stack:
            self._stack = stack
            self._page = None
            self.extracted = {}
            self.logger.info("Starting mission kind=%s url=%s", spec.kind, spec.url)
            try:
                analysis = self.analyze(spec)
                plan = self.plan(analysis)
            except MissionError as exc:
                self.logger.error("Mission failed: %s", exc)
                return {"success": False, "kind": spec.kind, "error": str(exc)}
            try:
                results = self.run_steps(spec, plan)
            finally:
                self._page = None
                self._stack = None
            evaluation = self.evaluate(results)
            self.logger.info(
                "Mission finished kind=%s succeeded=%d/%d",
                spec.kind,
                evaluation["succeeded"],
                evaluation["total"],
            )
            return {
                "success": evaluation["failed"] == 0,
                "kind": spec.kind,
                "analysis": analysis,
                "plan": [{"action": s.action, "description": s.description} for s in plan],
                "results": results,
                "evaluation": evaluation,
            }

    def analyze(self, spec: MissionSpec) -> dict[str, Any]:
        kind = self.kinds.get(spec.kind)
        if kind is None:
            raise MissionConfigError(f"Unknown mission type {spec.kind!r}")
        return {
            "kind": kind.name,
            "url": spec.url,
            "objective": spec.objective or kind.description,
            "stepCount": len(kind.steps),
        }

    def plan(self, analysis: dict[str, Any]) -> list[MissionStep]:
        return list(self.kinds[analysis["kind"]].steps)

    def run_steps(self, spec: MissionSpec, plan: list[MissionStep]) -> list[dict[str, Any]]:
        """Run every step; failures are recorded and do not stop later steps."""
        results: list[dict[str, Any]] = []
        for step in plan:
            self.human_pause(step.pause)
            handler = self.handlers[step.action]
            try:
                outcome = handler(self, spec, step)
            except MissionError as exc:
                self.logger.error("Step failed: %s: %s", step.action, exc)
                results.append({"action": step.action, "ok": False, "error": str(exc)})
            except Exception as exc:  # noqa: BLE001
                self.logger.exception("Step crashed: %s", step.action)
                results.append({"action": step.action, "ok": False, "error": f"{type(exc).__name__}: {exc}"})
            else:
                results.append({"action": step.action, "ok": True, "result": outcome})
            if self.rng.random() < MICRO_BREAK_PROBABILITY:
                self.human_pause("micro-break")
        return results

    @staticmethod
    def evaluate(results: list[dict[str, Any]]) -> dict[str, Any]:
        total = len(results)
        succeeded = sum(1 for r in results if r.get("ok"))
        return {
            "total": total,
            "succeeded": succeeded,
            "failed": total - succeeded,
            "successRate": round(100.0 * succeeded / total, 1) if total else 0.0,
        }


__all__ = [
    "DEFAULT_HANDLERS",
    "HUMAN_PAUSES",
    "MISSION_KINDS",
    "MissionKind",
    "MissionRunner",
    "MissionSpec",
    "MissionStep",
    "OPTION_TYPES",
    "field_selector",
    "load_mission",
    "mission_templates",
    "parse_price",
    "selector_map",
    "validate_kinds",
]
