"""
Node execution.

The :class:`NodeExecutor` runs exactly one node against the run's scope and
reports the outcome as a :class:`NodeResult` variant. It is the error boundary
of a run: every exception raised while a node runs is converted into a
``NodeResult.Failed`` carrying a typed :class:`~flowstudio.core.results.NodeError`.

Model calls go through the :class:`ModelInvoker` protocol; the executor never
talks to a provider directly and never retries.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from typing import Any, Protocol, TypeAlias, runtime_checkable

from flowstudio.config import EngineConfig
from flowstudio.core.conditions import evaluate
from flowstudio.core.errors import (
    MissingVariableError,
    NodeExecutionFailure,
    ProviderError,
    RebindError,
    VariableTypeError,
)
from flowstudio.core.graph import ModelConfig, Node, NodeConfig
from flowstudio.core.results import NodeError, Usage
from flowstudio.core.scope import ResolveMode, VariableScope, resolve
from flowstudio.core.templates import format_value, render
from flowstudio.core.transforms import DEFAULT_TRANSFORMS, TransformRegistry
from flowstudio.core.types import ErrorKind, OutputFormat, VariableType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ModelResponse:
    """
    What a model call returned.

    Attributes:
        text: The completion text
        tokens_used: Total tokens reported by the provider
        cost_estimate: Cost reported by the provider; passed through untouched
        latency_ms: Provider-reported latency; measured by the executor when None
    """

    text: str
    tokens_used: int = 0
    cost_estimate: float = 0.0
    latency_ms: float | None = None


@runtime_checkable
class ModelInvoker(Protocol):
    """
    Capability for calling a language model.

    Implementations raise :class:`~flowstudio.core.errors.ProviderError` on
    failure and :class:`~flowstudio.core.errors.ProviderTimeout` (or
    ``TimeoutError``) when ``timeout`` seconds elapse.
    """

    def invoke(self, prompt_text: str, model_config: ModelConfig, timeout: float | None) -> ModelResponse: ...


class NodeResult:
    """
    Outcome of executing one node.

    Variants:
        - Completed: outputs were produced and bound into the scope
        - Failed: the node raised; nothing was bound
    """

    @dataclass(frozen=True)
    class Completed:
        outputs: Mapping[str, Any]
        usage: Usage | None = None

        @property
        def output(self) -> Any:
            return self.outputs.get("output")

    @dataclass(frozen=True)
    class Failed:
        error: NodeError
        usage: Usage | None = None

    Type: TypeAlias = Completed | Failed


@dataclass(frozen=True)
class _Produced:
    outputs: dict[str, Any]
    names: dict[str, Any] = field(default_factory=dict)
    usage: Usage | None = None


_BOOLEAN_WORDS = {"true": True, "yes": True, "1": True, "false": False, "no": False, "0": False}


def coerce_variable(name: str, value: Any, declared_type: VariableType) -> Any:
    """
    Coerce a Variable node's value to its declared type.

    ``None`` is passed through for every type.

    Raises:
        VariableTypeError: If the value cannot be represented as the type.
    """
    if value is None:
        return None
    match declared_type:
        case VariableType.STRING:
            return format_value(value)
        case VariableType.NUMBER:
            if isinstance(value, bool):
                raise VariableTypeError(f"Variable {name!r}: boolean {value!r} is not a number")
            if isinstance(value, (int, float)):
                return value
            text = str(value).strip()
            try:
                return int(text)
            except ValueError:
                pass
            try:
                return float(text)
            except ValueError:
                raise VariableTypeError(f"Variable {name!r}: {value!r} is not a number") from None
        case VariableType.BOOLEAN:
            if isinstance(value, bool):
                return value
            if isinstance(value, (int, float)) and value in (0, 1):
                return bool(value)
            word = str(value).strip().lower()
            if word in _BOOLEAN_WORDS:
                return _BOOLEAN_WORDS[word]
            raise VariableTypeError(f"Variable {name!r}: {value!r} is not a boolean")
        case VariableType.JSON:
            if isinstance(value, str):
                try:
                    return json.loads(value)
                except json.JSONDecodeError as e:
                    raise VariableTypeError(f"Variable {name!r}: invalid JSON ({e})") from e
            return value
    raise VariableTypeError(f"Variable {name!r}: unsupported type {declared_type!r}")


def format_output(value: Any, output_format: OutputFormat) -> str:
    match output_format:
        case OutputFormat.TEXT:
            return format_value(value)
        case OutputFormat.JSON:
            if isinstance(value, str):
                try:
                    value = json.loads(value)
                except json.JSONDecodeError:
                    pass
            return json.dumps(value, indent=2, default=str, ensure_ascii=False)
        case OutputFormat.MARKDOWN:
            if isinstance(value, (dict, list)):
                return "```json\n" + json.dumps(value, indent=2, default=str, ensure_ascii=False) + "\n```"
            return format_value(value)
    raise ValueError(f"Unsupported output format: {output_format!r}")


class NodeExecutor:
    """
    Runs single nodes.

    One executor can be shared by every run of an engine and by every batch
    worker: it holds only configuration and never run state.
    """

    def __init__(
        self,
        invoker: ModelInvoker | None,
        config: EngineConfig | None = None,
        transforms: TransformRegistry | None = None,
    ):
        self.invoker = invoker
        self.config = config or EngineConfig()
        self.transforms = transforms if transforms is not None else DEFAULT_TRANSFORMS

    @property
    def reference_mode(self) -> ResolveMode:
        """How Output templates resolve their placeholders."""
        return ResolveMode.STRICT if self.config.strict_references else ResolveMode.LENIENT

    def execute(self, node: Node, scope: VariableScope) -> NodeResult.Type:
        """
        Execute ``node`` and bind its outputs into ``scope``.

        Never raises: failures are returned as ``NodeResult.Failed``.
        """
        try:
            produced = self._run(node, scope)
            scope.bind_node(node.id, produced.outputs, produced.names)
        except NodeExecutionFailure as e:
            logger.debug(f"Node {node.id} failed: {e.kind.value}: {e}")
            return NodeResult.Failed(NodeError(e.kind, str(e)))
        except RebindError as e:
            logger.warning(f"Node {node.id} tried to rebind {e.name!r}")
            return NodeResult.Failed(NodeError(ErrorKind.REBIND, str(e)))
        except TimeoutError as e:
            logger.debug(f"Node {node.id} timed out: {e}")
            return NodeResult.Failed(NodeError.from_exception(e))
        except Exception as e:
            logger.exception(f"Unexpected error in node {node.id}")
            return NodeResult.Failed(NodeError.from_exception(e))

        logger.debug(f"Node {node.id} completed with fields {sorted(produced.outputs)}")
        return NodeResult.Completed(outputs=produced.outputs, usage=produced.usage)

    def _lookup(self, scope: VariableScope):
        def lookup(name: str) -> Any:
            return resolve(name, scope)

        return lookup

    def _run(self, node: Node, scope: VariableScope) -> _Produced:
        match node.config:
            case NodeConfig.Variable(name=name, declared_type=declared_type, required=required):
                if scope.contains(name):
                    value = coerce_variable(name, scope.lookup(name), declared_type)
                    return _Produced({"value": value, "output": value}, names={name: value})
                if required:
                    raise MissingVariableError(name)
                # Absent and optional: the bare name stays unbound.
                return _Produced({"value": None, "output": None})

            case NodeConfig.Prompt(template=template, model=model, system_template=system_template, timeout=timeout):
                lookup = self._lookup(scope)
                text = render(template, lookup)
                if system_template:
                    model = replace(model, system_message=render(system_template, lookup))
                return self._invoke(text, model, timeout if timeout is not None else self.config.model_timeout)

            case NodeConfig.Conditional(condition=condition):
                result = evaluate(condition, scope)
                return _Produced({"result": result, "output": result})

            case NodeConfig.Transform(function=function, input=input_ref, args=args, output_field=output_field):
                value = resolve(input_ref, scope)
                transformed = self.transforms.apply(function, value, args)
                return _Produced({output_field: transformed, "output": transformed})

            case NodeConfig.Output(source=source, format=output_format, template=template):
                value = resolve(source, scope)
                if template:
                    text = render(template, self._output_lookup(scope, value))
                else:
                    text = format_output(value, output_format)
                # Plain text Output passes the upstream value through unchanged.
                output = value if not template and output_format is OutputFormat.TEXT else text
                return _Produced({"output": output, "value": value, "text": text})

        raise TypeError(f"Unsupported node config: {node.config!r}")

    def _output_lookup(self, scope: VariableScope, value: Any):
        mode = self.reference_mode

        def lookup(name: str) -> Any:
            if name == "value":
                return resolve(name, scope, ResolveMode.LENIENT, fallback=value)
            return resolve(name, scope, mode, fallback="")

        return lookup

    def _invoke(self, text: str, model: ModelConfig, timeout: float | None) -> _Produced:
        if self.invoker is None:
            raise ProviderError("No model invoker is configured", provider=model.provider)

        start = time.perf_counter()
        response = self.invoker.invoke(text, model, timeout)
        elapsed_ms = (time.perf_counter() - start) * 1000.0

        usage = Usage(
            tokens=response.tokens_used,
            cost=response.cost_estimate,
            latency_ms=response.latency_ms if response.latency_ms is not None else elapsed_ms,
            calls=1,
        )
        return _Produced({"output": response.text, "text": response.text, "prompt": text}, usage=usage)


__all__ = [
    "ModelResponse",
    "ModelInvoker",
    "NodeResult",
    "NodeExecutor",
    "coerce_variable",
    "format_output",
]
