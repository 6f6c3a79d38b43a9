"""
Gateway Transformer Registry: named, config-parameterized payload transforms

- Register / update / deregister at runtime (builtins locked to superusers)
- Config validated at registration; bad config never reaches a request
- Custom pipelines compose other transformers, acyclic and depth-bounded
- Any failure surfaces as TransformError and aborts only the calling step
"""
from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

import structlog

from core.errors import AuthorizationError, ConfigError, ConflictError, GatewayError, NotFound, TransformError
from core.transformers.kinds import KINDS, TransformerKind
from core.paths import PathSyntaxError

logger = structlog.get_logger(__name__)

_JSON_TYPES: dict[str, tuple[type, ...]] = {
    "object": (dict,),
    "array": (list,),
    "string": (str,),
    "number": (int, float),
    "integer": (int,),
    "boolean": (bool,),
    "null": (type(None),),
}


@dataclass
class Transformer:
    id: str
    kind: TransformerKind
    config: dict[str, Any] = field(default_factory=dict)
    description: str = ""
    input_schema: Optional[dict] = None
    output_schema: Optional[dict] = None
    is_builtin: bool = False
    tenant_id: str = "default"
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "config": self.config,
            "description": self.description,
            "input_schema": self.input_schema,
            "output_schema": self.output_schema,
            "is_builtin": self.is_builtin,
            "tenant_id": self.tenant_id,
            "created_at": self.created_at.isoformat(),
        }


BUILTINS: list[Transformer] = [
    Transformer("identity", TransformerKind.IDENTITY, description="Pass the payload through unchanged", is_builtin=True),
    Transformer(
        "extract_data",
        TransformerKind.JSONPATH_EXTRACT,
        {"path": "$.data"},
        description="Unwrap a {data: ...} envelope",
        is_builtin=True,
    ),
    Transformer(
        "first_result",
        TransformerKind.JSONPATH_EXTRACT,
        {"path": "$.results", "op": "first"},
        description="First element of a {results: [...]} list",
        is_builtin=True,
    ),
    Transformer(
        "to_json_string",
        TransformerKind.FORMAT,
        {"format": "json"},
        description="Serialize the payload as canonical JSON text",
        is_builtin=True,
    ),
]


def check_schema(schema: Optional[dict], value: Any, where: str = "$") -> Optional[str]:
    """Minimal JSON-schema subset: ``type``, ``required``, ``properties``, ``items``.

    Returns the first violation, or None.
    """
    if not schema:
        return None
    expected = schema.get("type")
    if expected:
        types = _JSON_TYPES.get(expected, ())
        is_bool = isinstance(value, bool)
        if not isinstance(value, types) or (is_bool and expected in ("number", "integer")):
            return f"{where} should be {expected}"
    if isinstance(value, dict):
        for key in schema.get("required", []):
            if key not in value:
                return f"{where}.{key} is required"
        for key, sub in schema.get("properties", {}).items():
            if key in value:
                problem = check_schema(sub, value[key], f"{where}.{key}")
                if problem:
                    return problem
    if isinstance(value, list) and schema.get("items"):
        for i, item in enumerate(value):
            problem = check_schema(schema["items"], item, f"{where}[{i}]")
            if problem:
                return problem
    return None


class TransformerRegistry:
    """Catalog of transformers, resolved by id and dispatched by kind."""

    def __init__(self, max_pipeline_depth: int = 5, include_builtins: bool = True):
        self.max_pipeline_depth = max_pipeline_depth
        self._transformers: dict[str, Transformer] = {}
        if include_builtins:
            for builtin in BUILTINS:
                self._transformers[builtin.id] = builtin

    # ------------------------------------------------------------------
    # Catalog
    # ------------------------------------------------------------------

    def register(
        self,
        transformer_id: str,
        kind: str | TransformerKind,
        config: Optional[dict] = None,
        *,
        description: str = "",
        input_schema: Optional[dict] = None,
        output_schema: Optional[dict] = None,
        is_builtin: bool = False,
        is_superuser: bool = False,
        tenant_id: str = "default",
    ) -> Transformer:
        """Validate and add a transformer. Raises ConfigError on invalid config."""
        if not transformer_id:
            raise ConfigError("Transformer id is required")
        existing = self._transformers.get(transformer_id)
        if existing is not None:
            raise ConflictError(f"Transformer '{transformer_id}' already exists")
        if is_builtin and not is_superuser:
            raise AuthorizationError("Only superusers can register builtin transformers")

        transformer = Transformer(
            id=transformer_id,
            kind=self._kind(kind),
            config=dict(config or {}),
            description=description,
            input_schema=input_schema,
            output_schema=output_schema,
            is_builtin=is_builtin,
            tenant_id=tenant_id,
        )
        self._validate(transformer)
        self._transformers[transformer_id] = transformer
        logger.info("transformer_registered", transformer_id=transformer_id, kind=transformer.kind.value)
        return transformer

    def update(
        self,
        transformer_id: str,
        config: dict,
        *,
        description: Optional[str] = None,
        is_superuser: bool = False,
    ) -> Transformer:
        current = self.get(transformer_id)
        if current.is_builtin and not is_superuser:
            raise AuthorizationError("Builtin transformers can only be changed by superusers")
        candidate = Transformer(
            id=current.id,
            kind=current.kind,
            config=dict(config),
            description=current.description if description is None else description,
            input_schema=current.input_schema,
            output_schema=current.output_schema,
            is_builtin=current.is_builtin,
            created_at=current.created_at,
        )
        self._validate(candidate)
        self._transformers[transformer_id] = candidate
        logger.info("transformer_updated", transformer_id=transformer_id)
        return candidate

    def deregister(self, transformer_id: str, *, is_superuser: bool = False) -> None:
        current = self.get(transformer_id)
        if current.is_builtin and not is_superuser:
            raise AuthorizationError("Builtin transformers can only be deleted by superusers")
        users = [t.id for t in self._transformers.values() if transformer_id in self._pipeline(t)]
        if users:
            raise ConflictError(
                f"Transformer '{transformer_id}' is used by pipelines",
                details={"used_by": users},
            )
        del self._transformers[transformer_id]
        logger.info("transformer_deregistered", transformer_id=transformer_id)

    def load(self, transformer: Transformer) -> None:
        """Hydrate from storage without re-running registration checks."""
        self._transformers[transformer.id] = transformer

    def get(self, transformer_id: str) -> Transformer:
        transformer = self._transformers.get(transformer_id)
        if transformer is None:
            raise NotFound("transformer", transformer_id)
        return transformer

    def exists(self, transformer_id: str) -> bool:
        return transformer_id in self._transformers

    def list(self, include_builtins: bool = True) -> list[Transformer]:
        return [t for t in self._transformers.values() if include_builtins or not t.is_builtin]

    @property
    def count(self) -> int:
        return len(self._transformers)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def apply(self, transformer_id: str, payload: Any, context: Optional[dict] = None) -> Any:
        """Run a transformer. Every failure is reported as TransformError."""
        return self._apply(transformer_id, payload, context or {}, depth=0)

    def _apply(self, transformer_id: str, payload: Any, context: dict, depth: int) -> Any:
        transformer = self._transformers.get(transformer_id)
        if transformer is None:
            raise TransformError(transformer_id, "unknown transformer")
        if depth > self.max_pipeline_depth:
            raise TransformError(transformer_id, "pipeline depth exceeded")

        problem = check_schema(transformer.input_schema, payload)
        if problem:
            raise TransformError(transformer_id, f"input schema: {problem}")

        try:
            if transformer.kind == TransformerKind.CUSTOM:
                result = payload
                for ref in transformer.config["pipeline"]:
                    result = self._apply(ref, result, context, depth + 1)
            else:
                result = KINDS[transformer.kind].apply(payload, transformer.config, context)
        except GatewayError:
            raise
        except Exception as exc:
            # Sandboxed templates can still fail arithmetic or recurse too deep
            logger.warning("transform_failed", transformer_id=transformer_id, error=str(exc))
            raise TransformError(transformer_id, str(exc)) from exc

        problem = check_schema(transformer.output_schema, result)
        if problem:
            raise TransformError(transformer_id, f"output schema: {problem}")
        return result

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    @staticmethod
    def _kind(kind: str | TransformerKind) -> TransformerKind:
        try:
            return TransformerKind(kind)
        except ValueError:
            raise ConfigError(
                f"Unknown transformer kind '{kind}'",
                details={"allowed": [k.value for k in TransformerKind]},
            ) from None

    @staticmethod
    def _pipeline(transformer: Transformer) -> list[str]:
        if transformer.kind != TransformerKind.CUSTOM:
            return []
        return list(transformer.config.get("pipeline", []))

    def _validate(self, transformer: Transformer) -> None:
        if transformer.kind == TransformerKind.CUSTOM:
            self._validate_pipeline(transformer)
            return
        try:
            KINDS[transformer.kind].validate(transformer.config)
        except (ValueError, PathSyntaxError) as exc:
            raise ConfigError(
                f"Invalid config for transformer '{transformer.id}': {exc}",
                details={"transformer_id": transformer.id, "kind": transformer.kind.value},
            ) from exc

    def _validate_pipeline(self, transformer: Transformer) -> None:
        pipeline = transformer.config.get("pipeline")
        if not isinstance(pipeline, list) or not pipeline or not all(isinstance(p, str) for p in pipeline):
            raise ConfigError("custom transformer requires a non-empty 'pipeline' list of transformer ids")
        missing = [p for p in pipeline if p != transformer.id and p not in self._transformers]
        if missing:
            raise ConfigError("Pipeline references unknown transformers", details={"missing": missing})

        # Walk the graph as it would look with the candidate in place.
        graph = {t.id: self._pipeline(t) for t in self._transformers.values()}
        graph[transformer.id] = pipeline

        def depth_of(node: str, trail: tuple[str, ...]) -> int:
            if node in trail:
                raise ConfigError(
                    "Transformer pipeline contains a cycle",
                    details={"cycle": list(trail[trail.index(node):]) + [node]},
                )
            children = graph.get(node, [])
            if not children:
                return 0
            return 1 + max(depth_of(child, trail + (node,)) for child in children)

        depth = depth_of(transformer.id, ())
        if depth > self.max_pipeline_depth:
            raise ConfigError(
                f"Pipeline depth {depth} exceeds limit {self.max_pipeline_depth}",
                details={"transformer_id": transformer.id},
            )
