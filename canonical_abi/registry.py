from __future__ import annotations
import logging
from dataclasses import dataclass, replace
from typing import Optional

from .errors import ExportNotFound, SchemaValidationError
from .layout import flatten_functype, flatten_types
from .options import MAX_FLAT_PARAMS, CanonicalOptions
from .valtypes import ListType, PrimValType, RecordType, TupleType, ValType, is_heap_shaped, type_name

logger = logging.getLogger(__name__)

@dataclass(frozen=True)
class ExportFunction:
  name: str
  params: tuple[tuple[str, ValType], ...]
  result: Optional[ValType] = None
  realloc: Optional[str] = None
  post_return: Optional[str] = None

  def __post_init__(self):
    object.__setattr__(self, 'params', tuple((label, t) for label,t in self.params))

  def param_types(self):
    return [t for _,t in self.params]

  def result_types(self):
    if self.result is None:
      return []
    return [self.result]

  @property
  def has_post_return(self):
    return self.post_return is not None

  def needs_realloc(self):
    ts = self.param_types()
    return any(is_heap_shaped(t) for t in ts) or len(flatten_types(ts)) > MAX_FLAT_PARAMS

def validate_type(t, where):
  match t:
    case PrimValType():
      pass
    case ListType(u):
      validate_type(u, where)
    case TupleType(ts):
      if not ts:
        raise SchemaValidationError("{}: empty tuple types are not permitted".format(where))
      for u in ts:
        validate_type(u, where)
    case RecordType(fields):
      if not fields:
        raise SchemaValidationError("{}: empty record types are not permitted".format(where))
      labels = [f.label for f in fields]
      if len(set(labels)) != len(labels):
        raise SchemaValidationError("{}: duplicate field labels in {}".format(where, type_name(t)))
      for f in fields:
        validate_type(f.t, where)
    case _:
      raise SchemaValidationError("{}: unsupported type {!r}".format(where, t))

class ExportRegistry:
  """Export functions of one module, validated against its exports once at load."""

  functions: dict[str, ExportFunction]

  def __init__(self, guest, functions, opts = None):
    self.opts = opts or CanonicalOptions()
    self.functions = {}
    for fn in functions:
      if fn.name in self.functions:
        raise SchemaValidationError("export {!r} is described twice".format(fn.name))
      self.functions[fn.name] = self.validate(guest, fn)
    logger.debug("registered %d exports", len(self.functions))

  def validate(self, guest, fn):
    exports = guest.exports
    for label,t in fn.params:
      validate_type(t, "{}({})".format(fn.name, label))
    if fn.result is not None:
      validate_type(fn.result, "{} result".format(fn.name))

    if fn.name not in exports:
      raise SchemaValidationError("module does not export {!r}".format(fn.name))

    core_type = guest.core_type(fn.name)
    expected = flatten_functype(fn)
    if core_type is not None and core_type != expected:
      raise SchemaValidationError("{!r} has core type {} -> {}, schema implies {} -> {}".format(
        fn.name, core_type.params, core_type.results, expected.params, expected.results))

    post_return = fn.post_return
    if post_return is not None:
      if post_return not in exports:
        raise SchemaValidationError("module does not export post-return {!r} for {!r}".format(post_return, fn.name))
    elif self.opts.post_return_name(fn.name) in exports:
      post_return = self.opts.post_return_name(fn.name)
    elif is_heap_shaped(fn.result):
      raise SchemaValidationError("{!r} returns {} but the module has no {!r}".format(
        fn.name, type_name(fn.result), self.opts.post_return_name(fn.name)))

    realloc = fn.realloc or self.opts.realloc
    if fn.needs_realloc() and realloc not in exports:
      raise SchemaValidationError("{!r} takes heap-allocated arguments but the module has no {!r}".format(fn.name, realloc))

    return replace(fn, realloc = realloc, post_return = post_return)

  def resolve(self, name) -> ExportFunction:
    try:
      return self.functions[name]
    except KeyError:
      raise ExportNotFound(name) from None

  def __contains__(self, name):
    return name in self.functions

  def __iter__(self):
    return iter(self.functions.values())
