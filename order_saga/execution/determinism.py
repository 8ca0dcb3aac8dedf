"""Determinism checking and SHA256 pinning for workflow functions."""

import ast
import hashlib
import inspect
import json
import textwrap
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

import structlog

from order_saga.errors import NonDeterministicError
from order_saga.storage.events import EventType, HistoryEvent


logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class WorkflowFingerprint:
    """Fingerprint of a workflow function, stored with each new instance."""
    name: str
    source_hash: str
    imports: Set[str] = field(default_factory=set)
    external_calls: Set[str] = field(default_factory=set)
    helpers: Tuple[str, ...] = ()

    @property
    def version(self) -> str:
        return self.source_hash[:12]


class DeterminismVisitor(ast.NodeVisitor):
    """Collects imports and dotted call names of a function body"""

    def __init__(self):
        self.imports: Set[str] = set()
        self.external_calls: Set[str] = set()

    def visit_Import(self, node: ast.Import):
        for alias in node.names:
            self.imports.add(alias.name)
        self.generic_visit(node)

    def visit_ImportFrom(self, node: ast.ImportFrom):
        if node.module:
            for alias in node.names:
                self.imports.add(f"{node.module}.{alias.name}")
        self.generic_visit(node)

    def visit_Call(self, node: ast.Call):
        name = _dotted_name(node.func)
        if name:
            self.external_calls.add(name)
        self.generic_visit(node)


def _dotted_name(node: ast.AST) -> Optional[str]:
    if isinstance(node, ast.Name):
        return node.id
    if isinstance(node, ast.Attribute):
        base = _dotted_name(node.value)
        return f"{base}.{node.attr}" if base else None
    return None


def _source_of(func: Callable) -> str:
    try:
        return textwrap.dedent(inspect.getsource(func))
    except (OSError, TypeError):
        return ""


def _parse(source: str) -> Optional[ast.AST]:
    if not source:
        return None
    try:
        return ast.parse(source)
    except SyntaxError:
        return None


class WorkflowAnalyzer:
    """Flags calls that would make replay diverge from recorded history"""

    NON_DETERMINISTIC_PREFIXES = (
        'time.', 'datetime.', 'date.today', 'random.', 'uuid.', 'secrets.',
        'os.environ', 'os.getenv', 'os.urandom',
        'requests.', 'httpx.', 'aiohttp.', 'asyncio.sleep',
    )

    NON_DETERMINISTIC_BUILTINS = {'input', 'open'}

    def analyze(self, name: str, func: Callable) -> WorkflowFingerprint:
        """Fingerprint ``func`` together with the module helpers it calls."""
        helpers = self.find_helpers(func)

        visitor = DeterminismVisitor()
        sources = []
        for target in [func] + helpers:
            source = _source_of(target)
            sources.append(source)
            tree = _parse(source)
            if tree is not None:
                visitor.visit(tree)

        return WorkflowFingerprint(
            name=name,
            source_hash=hashlib.sha256("\n".join(sources).encode()).hexdigest(),
            imports=visitor.imports,
            external_calls=visitor.external_calls,
            helpers=tuple(helper.__name__ for helper in helpers)
        )

    def find_helpers(self, func: Callable) -> List[Callable]:
        """Functions of ``func``'s module reachable from it by plain-name calls, sorted by name."""
        found: Dict[str, Callable] = {}
        pending = [func]
        while pending:
            current = pending.pop()
            tree = _parse(_source_of(current))
            if tree is None:
                continue
            namespace = getattr(current, "__globals__", {})
            for node in ast.walk(tree):
                if not (isinstance(node, ast.Call) and isinstance(node.func, ast.Name)):
                    continue
                target = namespace.get(node.func.id)
                if (
                    inspect.isfunction(target)
                    and target is not func
                    and target.__module__ == func.__module__
                    and node.func.id not in found
                ):
                    found[node.func.id] = target
                    pending.append(target)
        return [found[helper] for helper in sorted(found)]

    def find_issues(self, fingerprint: WorkflowFingerprint) -> List[str]:
        issues = []
        for call in sorted(fingerprint.external_calls):
            if call in self.NON_DETERMINISTIC_BUILTINS or call.startswith(self.NON_DETERMINISTIC_PREFIXES):
                issues.append(f"Non-deterministic call detected: {call}")
        for imp in sorted(fingerprint.imports):
            if imp.split('.')[0] in ('time', 'random', 'uuid', 'secrets'):
                issues.append(f"Non-deterministic import detected: {imp}")
        return issues


def request_hash(payload: Any) -> str:
    """Create consistent hash of an activity request payload"""
    stable_json = json.dumps(payload, sort_keys=True, default=str, separators=(',', ':'))
    return hashlib.sha256(stable_json.encode()).hexdigest()


class DeterminismChecker:
    """Checks workflow functions at registration and activity calls at replay."""

    def __init__(self, strict: bool = False):
        self.strict = strict
        self.analyzer = WorkflowAnalyzer()

    def register_workflow(self, name: str, func: Callable) -> WorkflowFingerprint:
        fingerprint = self.analyzer.analyze(name, func)
        issues = self.analyzer.find_issues(fingerprint)
        if issues:
            if self.strict:
                raise NonDeterministicError(f"Workflow {name} is not deterministic: {issues}")
            logger.warning("workflow_determinism_issues", workflow=name, issues=issues)
        return fingerprint

    def check_version(self, instance_id: str, recorded: Optional[str], current: str) -> None:
        """Compare the workflow version an instance started with to the current one."""
        if recorded is None or recorded == current:
            return
        if self.strict:
            raise NonDeterministicError(
                f"Instance {instance_id} started on workflow version {recorded}, "
                f"current version is {current}"
            )
        logger.warning(
            "workflow_version_changed",
            instance_id=instance_id,
            recorded_version=recorded,
            current_version=current
        )

    def check_replayed_call(
        self,
        scheduled: HistoryEvent,
        activity_name: str,
        request: Any
    ) -> None:
        """Raise when a replayed call differs from the recorded one."""
        if scheduled.event_type != EventType.ACTIVITY_SCHEDULED:
            raise NonDeterministicError(
                f"Instance {scheduled.instance_id} step {scheduled.sequence_number}: "
                f"expected a scheduled entry, history has {scheduled.event_type.value}"
            )
        recorded_name = scheduled.data.get("activity_name")
        if recorded_name != activity_name:
            raise NonDeterministicError(
                f"Instance {scheduled.instance_id} step {scheduled.sequence_number}: "
                f"history has {recorded_name}, workflow called {activity_name}"
            )
        if request_hash(scheduled.data.get("request")) != request_hash(request):
            raise NonDeterministicError(
                f"Instance {scheduled.instance_id} step {scheduled.sequence_number}: "
                f"{activity_name} request differs from recorded history"
            )
