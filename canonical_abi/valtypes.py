from dataclasses import dataclass
from typing import Optional

class ValType: pass

@dataclass(frozen=True)
class PrimValType(ValType):
  pass

class BoolType(PrimValType): pass
class S8Type(PrimValType): pass
class U8Type(PrimValType): pass
class S16Type(PrimValType): pass
class U16Type(PrimValType): pass
class S32Type(PrimValType): pass
class U32Type(PrimValType): pass
class S64Type(PrimValType): pass
class U64Type(PrimValType): pass
class F32Type(PrimValType): pass
class F64Type(PrimValType): pass
class StringType(PrimValType): pass

@dataclass(frozen=True)
class ListType(ValType):
  t: ValType

@dataclass(frozen=True)
class FieldType:
  label: str
  t: ValType

@dataclass(frozen=True)
class RecordType(ValType):
  fields: tuple[FieldType, ...]

  def __init__(self, fields):
    object.__setattr__(self, 'fields', tuple(fields))

@dataclass(frozen=True)
class TupleType(ValType):
  ts: tuple[ValType, ...]

  def __init__(self, ts):
    object.__setattr__(self, 'ts', tuple(ts))

PRIMITIVE_NAMES = {
  'bool': BoolType,
  's8': S8Type, 'u8': U8Type,
  's16': S16Type, 'u16': U16Type,
  's32': S32Type, 'u32': U32Type,
  's64': S64Type, 'u64': U64Type,
  'f32': F32Type, 'f64': F64Type,
  'string': StringType,
}

# Aliases used by hosts that spell signed kinds the C way.
PRIMITIVE_NAMES.update({'i8': S8Type, 'i16': S16Type, 'i32': S32Type, 'i64': S64Type})

INT_RANGES = {
  U8Type: (0, 1 << 8), U16Type: (0, 1 << 16), U32Type: (0, 1 << 32), U64Type: (0, 1 << 64),
  S8Type: (-(1 << 7), 1 << 7), S16Type: (-(1 << 15), 1 << 15),
  S32Type: (-(1 << 31), 1 << 31), S64Type: (-(1 << 63), 1 << 63),
}

def type_name(t):
  match t:
    case ListType(u)        : return 'list<{}>'.format(type_name(u))
    case TupleType(ts)      : return 'tuple<{}>'.format(', '.join(type_name(u) for u in ts))
    case RecordType(fields) : return 'record{{{}}}'.format(', '.join(
                                '{}: {}'.format(f.label, type_name(f.t)) for f in fields))
    case PrimValType()      : return next(n for n,c in PRIMITIVE_NAMES.items() if c is type(t))
  assert(False)

### Despecialization

def despecialize(t):
  match t:
    case TupleType(ts) : return RecordType([ FieldType(str(i), t) for i,t in enumerate(ts) ])
    case _             : return t

### Type Predicates

def contains(t, p):
  t = despecialize(t)
  match t:
    case None:
      return False
    case PrimValType():
      return p(t)
    case ListType(u):
      return p(t) or contains(u, p)
    case RecordType(fields):
      return p(t) or any(contains(f.t, p) for f in fields)
  assert(False)

def is_heap_shaped(t: Optional[ValType]) -> bool:
  return contains(t, lambda u: isinstance(u, StringType | ListType))
