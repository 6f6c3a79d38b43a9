"""
Gateway Transformers: closed set of data-driven payload transforms.

- TransformerRegistry: catalog + dispatcher, TransformError on failure
- Paths: ``a.b[0]`` / ``$.items[*].id`` access without code evaluation
"""
from core.transformers.kinds import FORMATS, POST_OPS, TransformerKind
from core.paths import PathSyntaxError, get_path, parse_path, set_path
from core.transformers.registry import BUILTINS, Transformer, TransformerRegistry, check_schema

__all__ = [
    "BUILTINS",
    "FORMATS",
    "POST_OPS",
    "PathSyntaxError",
    "Transformer",
    "TransformerKind",
    "TransformerRegistry",
    "check_schema",
    "get_path",
    "parse_path",
    "set_path",
]
