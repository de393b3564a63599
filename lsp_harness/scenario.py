"""Ordered conformance scenario: handshake, feature probes, teardown.

Each step waits for the previous one to settle. A failing step marks every
later step as skipped and aborts the session, so the report always lists the
full sequence with a pass/fail outcome per step.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from .errors import HarnessError
from .session import LanguageServerSession

logger = logging.getLogger(__name__)

MARKDOWN = "markdown"
TEXT_DOCUMENT_SYNC_INCREMENTAL = 2

DOCUMENT_URI = "file://some/text/document.sh"
LANGUAGE_ID = "shellscript"
DOCUMENT_VERSION = 2

CLIENT_CAPABILITIES = {
    "textDocument": {
        "completion": {
            "completionItem": {
                "documentationFormat": [MARKDOWN],
                "snippetSupport": True,
            }
        },
        "hover": {"contentFormat": [MARKDOWN]},
    }
}

ABSENT_CAPABILITIES = ("codeActionProvider", "foldingRangeProvider", "renameProvider")


def check_capabilities(capabilities: Any) -> list[str]:
    if not isinstance(capabilities, dict):
        return [f"capabilities is not an object: {capabilities!r}"]

    problems = []
    sync = capabilities.get("textDocumentSync")
    if isinstance(sync, dict):
        sync = sync.get("change")
    if sync != TEXT_DOCUMENT_SYNC_INCREMENTAL:
        problems.append(f"textDocumentSync is {sync!r}, expected Incremental (2)")

    completion = capabilities.get("completionProvider")
    if not isinstance(completion, dict) or completion.get("resolveProvider") is not True:
        problems.append(f"completionProvider.resolveProvider is not true: {completion!r}")

    if capabilities.get("hoverProvider") is not True:
        problems.append(f"hoverProvider is {capabilities.get('hoverProvider')!r}")

    for name in ABSENT_CAPABILITIES:
        if name in capabilities:
            problems.append(f"{name} should be absent, got {capabilities[name]!r}")
    return problems


def completion_items(result: Any) -> list | None:
    """Items of a ``CompletionItem[]`` or ``CompletionList`` result."""
    if isinstance(result, list):
        return result
    if isinstance(result, dict) and isinstance(result.get("items"), list):
        return result["items"]
    return None


def check_completion(result: Any) -> list[str]:
    items = completion_items(result)
    if items is None:
        return [f"completion result is not a list of items: {result!r}"]
    if not items:
        return ["completion item list is empty"]
    unlabeled = [item for item in items if not isinstance(item, dict) or "label" not in item]
    if unlabeled:
        return [f"completion items without label: {unlabeled!r}"]
    logger.info(f"completion labels = {[item['label'] for item in items]}")
    return []


def check_hover(result: Any, expected: str | None) -> list[str]:
    if not isinstance(result, dict) or "contents" not in result:
        return [f"result is not a Hover: {result!r}"]
    contents = result["contents"]
    if not isinstance(contents, dict) or not {"kind", "value"} <= contents.keys():
        return [f"hover contents is not MarkupContent: {contents!r}"]

    problems = []
    if contents["kind"] != MARKDOWN:
        problems.append(f"hover kind is {contents['kind']!r}, expected {MARKDOWN!r}")
    if expected is not None and contents["value"] != expected:
        problems.append(f"hover value {contents['value']!r} != {expected!r}")
    return problems


@dataclass
class FeatureProbe:
    method: str
    text: str
    line: int
    character: int
    expected: str | None = None

    @property
    def name(self):
        return self.method.rsplit("/", 1)[-1]

    def check(self, result):
        if self.method == "textDocument/completion":
            return check_completion(result)
        return check_hover(result, self.expected)


COMPLETION_PROBE = FeatureProbe("textDocument/completion", "curl --ins  ", 0, 10)
HOVER_PROBE = FeatureProbe(
    "textDocument/hover",
    "curl --insecure ",
    0,
    10,
    expected="`-k`, `--insecure` \n\n Allow insecure server connections when using SSL",
)
PROBES = {"completion": COMPLETION_PROBE, "hover": HOVER_PROBE}


@dataclass
class StepOutcome:
    name: str
    passed: bool
    detail: str = ""
    skipped: bool = False

    def __str__(self):
        status = "SKIP" if self.skipped else ("PASS" if self.passed else "FAIL")
        return f"[{status}] {self.name}" + (f": {self.detail}" if self.detail else "")


@dataclass
class ScenarioReport:
    outcomes: list[StepOutcome] = field(default_factory=list)
    anomalies: list[HarnessError] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return bool(self.outcomes) and not self.anomalies and all(
            outcome.passed for outcome in self.outcomes
        )

    @property
    def failures(self) -> list[StepOutcome]:
        return [outcome for outcome in self.outcomes if not outcome.passed]

    def step(self, name: str) -> StepOutcome | None:
        return next((o for o in self.outcomes if o.name == name), None)

    def summary(self) -> str:
        lines = [str(outcome) for outcome in self.outcomes]
        lines.extend(f"[ANOMALY] {anomaly}" for anomaly in self.anomalies)
        return "\n".join(lines)


class ScenarioDriver:
    def __init__(
        self,
        session: LanguageServerSession,
        workspace=None,
        capabilities: dict[str, Any] | None = None,
        uri: str = DOCUMENT_URI,
        language_id: str = LANGUAGE_ID,
    ):
        self.session = session
        self.workspace = workspace
        self.capabilities = CLIENT_CAPABILITIES if capabilities is None else capabilities
        self.uri = uri
        self.language_id = language_id

    def _plan(self, probes) -> list[tuple[str, Callable[[], Awaitable[list[str]]]]]:
        steps = []
        if not self.session.transport.is_open:
            steps.append(("start", self._start))
        steps.append(("initialize", self._initialize))
        steps.append(("initialized", self._initialized))
        for probe in probes:
            steps.append((f"{probe.name}: didOpen", lambda p=probe: self._open(p)))
            steps.append((probe.name, lambda p=probe: self._request(p)))
            steps.append((f"{probe.name}: didClose", self._close))
        steps.append(("shutdown", self._shutdown))
        return steps

    async def run(self, probes=(COMPLETION_PROBE, HOVER_PROBE)) -> ScenarioReport:
        report = ScenarioReport()
        failed = False
        for name, action in self._plan(probes):
            if failed:
                report.outcomes.append(StepOutcome(name, False, "skipped", skipped=True))
                continue
            outcome = await self._run_step(name, action)
            report.outcomes.append(outcome)
            failed = not outcome.passed

        if failed:
            await self.session.stop()
        report.anomalies.extend(self.session.anomalies)
        return report

    async def _run_step(self, name, action) -> StepOutcome:
        logger.info(f"Scenario step: {name}")
        try:
            problems = await action()
        except (HarnessError, ConnectionError, RuntimeError) as e:
            logger.error(f"Step {name} failed: {e}")
            return StepOutcome(name, False, f"{type(e).__name__}: {e}")
        if problems:
            logger.error(f"Step {name} failed: {problems}")
            return StepOutcome(name, False, "; ".join(problems))
        return StepOutcome(name, True)

    async def _start(self):
        await self.session.start()
        return []

    def _with_request(self, method: str, problems: list[str], result: Any) -> list[str]:
        if not problems:
            return []
        # Steps run one at a time, so the last issued id is this request's.
        request_id = self.session.table.allocator.last
        return [f"id={request_id} method={method}: {'; '.join(problems)} (result={result!r})"]

    async def _initialize(self):
        result = await self.session.initialize(self.workspace, self.capabilities)
        if not isinstance(result, dict):
            problems = ["initialize result is not an object"]
        else:
            problems = check_capabilities(result.get("capabilities"))
        return self._with_request("initialize", problems, result)

    async def _initialized(self):
        await self.session.initialized()
        return []

    async def _open(self, probe: FeatureProbe):
        await self.session.did_open(
            self.uri, probe.text, self.language_id, DOCUMENT_VERSION
        )
        return []

    async def _request(self, probe: FeatureProbe):
        params = {
            "textDocument": {"uri": self.uri},
            "position": {"line": probe.line, "character": probe.character},
        }
        result = await self.session.send_request(probe.method, params)
        return self._with_request(probe.method, probe.check(result), result)

    async def _close(self):
        await self.session.did_close(self.uri)
        return []

    async def _shutdown(self):
        try:
            await self.session.shutdown()
            await self.session.send_notification("exit")
        finally:
            await self.session.stop()
        return []
