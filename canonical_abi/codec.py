import math
import struct
from collections.abc import Mapping
from typing import Optional

from .errors import AllocationFailure, DecodeError, TypeMismatch
from .layout import alignment, align_to, elem_size, flatten_types
from .memory import MemoryAccessor
from .options import MAX_STRING_BYTE_LENGTH
from .valtypes import *

### Lifting and Lowering Context

class LiftLowerContext:
  mem: MemoryAccessor
  allocator: Optional['Allocator']

  def __init__(self, mem, allocator = None):
    self.mem = mem
    self.allocator = allocator

  def realloc(self, old_ptr, old_size, alignment, new_size):
    if self.allocator is None:
      raise AllocationFailure("no reallocator available for lowering")
    return self.allocator.allocate(old_ptr, old_size, alignment, new_size)

# largest finite float32
F32_MAX = 3.4028234663852886e38

# struct format characters for elements that can be moved as one packed block
PACKED_FORMATS = {
  BoolType: 'B',
  U8Type: 'B', S8Type: 'b',
  U16Type: 'H', S16Type: 'h',
  U32Type: 'I', S32Type: 'i',
  U64Type: 'Q', S64Type: 'q',
  F32Type: 'f', F64Type: 'd',
}

### Checking host values

def check_value(t, v, path = 'value'):
  def mismatch(what):
    raise TypeMismatch("{}: expected {}, got {}".format(path, type_name(t), what))

  match t:
    case BoolType():
      if type(v) is not bool:
        mismatch(type(v).__name__)
    case F32Type() | F64Type():
      if type(v) not in (int, float):
        mismatch(type(v).__name__)
      try:
        f = float(v)
      except OverflowError:
        mismatch("an int too large for a float")
      if isinstance(t, F32Type) and math.isfinite(f) and abs(f) > F32_MAX:
        mismatch("out-of-range {}".format(f))
    case StringType():
      if not isinstance(v, str):
        mismatch(type(v).__name__)
      try:
        n = len(v.encode('utf-8'))
      except UnicodeEncodeError:
        mismatch("a string that is not valid UTF-8")
      if n > MAX_STRING_BYTE_LENGTH:
        mismatch("a string of {} bytes".format(n))
    case ListType(U8Type()) if isinstance(v, (bytes, bytearray)):
      pass
    case ListType(u):
      if not isinstance(v, (list, tuple)):
        mismatch(type(v).__name__)
      for i,e in enumerate(v):
        check_value(u, e, '{}[{}]'.format(path, i))
    case TupleType(ts):
      if not isinstance(v, (list, tuple)) or len(v) != len(ts):
        mismatch(repr(v))
      for i,(u,e) in enumerate(zip(ts, v)):
        check_value(u, e, '{}[{}]'.format(path, i))
    case RecordType(fields):
      if not isinstance(v, Mapping):
        mismatch(type(v).__name__)
      labels = [f.label for f in fields]
      if set(v.keys()) != set(labels):
        mismatch("fields {}".format(sorted(v.keys())))
      for f in fields:
        check_value(f.t, v[f.label], '{}.{}'.format(path, f.label))
    case _:
      lo, hi = INT_RANGES[type(t)]
      if type(v) is not int:
        mismatch(type(v).__name__)
      if not lo <= v < hi:
        mismatch("out-of-range {}".format(v))

### Loading

def load(cx, ptr, t):
  match t:
    case BoolType()         : return convert_int_to_bool(cx.mem.load_int(ptr, 1))
    case U8Type()           : return cx.mem.load_int(ptr, 1)
    case U16Type()          : return cx.mem.load_int(ptr, 2)
    case U32Type()          : return cx.mem.load_int(ptr, 4)
    case U64Type()          : return cx.mem.load_int(ptr, 8)
    case S8Type()           : return cx.mem.load_int(ptr, 1, signed = True)
    case S16Type()          : return cx.mem.load_int(ptr, 2, signed = True)
    case S32Type()          : return cx.mem.load_int(ptr, 4, signed = True)
    case S64Type()          : return cx.mem.load_int(ptr, 8, signed = True)
    case F32Type()          : return struct.unpack('<f', cx.mem.read(ptr, 4))[0]
    case F64Type()          : return struct.unpack('<d', cx.mem.read(ptr, 8))[0]
    case StringType()       : return load_string(cx, ptr)
    case ListType(u)        : return load_list(cx, ptr, u)
    case RecordType(fields) : return load_record(cx, ptr, fields)
    case TupleType()        : return tuple(load_record(cx, ptr, despecialize(t).fields).values())
  assert(False)

def convert_int_to_bool(i):
  return i != 0

def load_string(cx, ptr):
  begin = cx.mem.load_int(ptr, 4)
  byte_length = cx.mem.load_int(ptr + 4, 4)
  return load_string_from_range(cx, begin, byte_length)

def load_string_from_range(cx, ptr, byte_length):
  data = cx.mem.read(ptr, byte_length)
  try:
    return data.decode('utf-8')
  except UnicodeDecodeError as e:
    raise DecodeError("invalid UTF-8 in string at {}+{}: {}".format(ptr, byte_length, e.reason)) from e

def load_list(cx, ptr, elem_type):
  begin = cx.mem.load_int(ptr, 4)
  length = cx.mem.load_int(ptr + 4, 4)
  return load_list_from_range(cx, begin, length, elem_type)

def load_list_from_range(cx, ptr, length, elem_type):
  if ptr != align_to(ptr, alignment(elem_type)):
    raise DecodeError("list data at {} is not {}-byte aligned".format(ptr, alignment(elem_type)))
  cx.mem.check(ptr, length * elem_size(elem_type))
  return load_list_from_valid_range(cx, ptr, length, elem_type)

def load_list_from_valid_range(cx, ptr, length, elem_type):
  fmt = PACKED_FORMATS.get(type(elem_type))
  if fmt is not None:
    data = cx.mem.read(ptr, length * elem_size(elem_type))
    a = list(struct.unpack('<{}{}'.format(length, fmt), data))
    if isinstance(elem_type, BoolType):
      a = [convert_int_to_bool(i) for i in a]
    return a
  a = []
  for i in range(length):
    a.append(load(cx, ptr + i * elem_size(elem_type), elem_type))
  return a

def load_record(cx, ptr, fields):
  record = {}
  for field in fields:
    ptr = align_to(ptr, alignment(field.t))
    record[field.label] = load(cx, ptr, field.t)
    ptr += elem_size(field.t)
  return record

### Storing

def store(cx, v, t, ptr):
  match t:
    case BoolType()         : cx.mem.store_int(int(bool(v)), ptr, 1)
    case U8Type()           : cx.mem.store_int(v, ptr, 1)
    case U16Type()          : cx.mem.store_int(v, ptr, 2)
    case U32Type()          : cx.mem.store_int(v, ptr, 4)
    case U64Type()          : cx.mem.store_int(v, ptr, 8)
    case S8Type()           : cx.mem.store_int(v, ptr, 1, signed = True)
    case S16Type()          : cx.mem.store_int(v, ptr, 2, signed = True)
    case S32Type()          : cx.mem.store_int(v, ptr, 4, signed = True)
    case S64Type()          : cx.mem.store_int(v, ptr, 8, signed = True)
    case F32Type()          : cx.mem.write(ptr, struct.pack('<f', v))
    case F64Type()          : cx.mem.write(ptr, struct.pack('<d', v))
    case StringType()       : store_string(cx, v, ptr)
    case ListType(u)        : store_list(cx, v, ptr, u)
    case RecordType(fields) : store_record(cx, v, ptr, fields)
    case TupleType()        : store_record(cx, tuple_to_record(v), ptr, despecialize(t).fields)
    case _                  : assert(False)

def tuple_to_record(v):
  return { str(i):e for i,e in enumerate(v) }

def store_string(cx, v, ptr):
  begin, byte_length = store_string_into_range(cx, v)
  cx.mem.store_int(begin, ptr, 4)
  cx.mem.store_int(byte_length, ptr + 4, 4)

def store_string_into_range(cx, v):
  encoded = v.encode('utf-8')
  assert(len(encoded) <= MAX_STRING_BYTE_LENGTH)
  if not encoded:
    return (0, 0)
  ptr = cx.realloc(0, 0, 1, len(encoded))
  cx.mem.write(ptr, encoded)
  return (ptr, len(encoded))

def store_list(cx, v, ptr, elem_type):
  begin, length = store_list_into_range(cx, v, elem_type)
  cx.mem.store_int(begin, ptr, 4)
  cx.mem.store_int(length, ptr + 4, 4)

def store_list_into_range(cx, v, elem_type):
  byte_length = len(v) * elem_size(elem_type)
  if byte_length == 0:
    return (0, 0)
  if byte_length >= (1 << 32):
    raise AllocationFailure("list of {} bytes does not fit in guest memory".format(byte_length))
  ptr = cx.realloc(0, 0, alignment(elem_type), byte_length)
  if ptr != align_to(ptr, alignment(elem_type)):
    raise AllocationFailure("reallocator returned {} for a {}-byte aligned request".format(ptr, alignment(elem_type)))
  cx.mem.check(ptr, byte_length)
  store_list_into_valid_range(cx, v, ptr, elem_type)
  return (ptr, len(v))

def store_list_into_valid_range(cx, v, ptr, elem_type):
  if isinstance(v, (bytes, bytearray)):
    cx.mem.write(ptr, v)
    return
  fmt = PACKED_FORMATS.get(type(elem_type))
  if fmt is not None:
    if isinstance(elem_type, BoolType):
      v = [int(bool(e)) for e in v]
    cx.mem.write(ptr, struct.pack('<{}{}'.format(len(v), fmt), *v))
    return
  for i,e in enumerate(v):
    store(cx, e, elem_type, ptr + i * elem_size(elem_type))

def store_record(cx, v, ptr, fields):
  for f in fields:
    ptr = align_to(ptr, alignment(f.t))
    store(cx, v[f.label], f.t, ptr)
    ptr += elem_size(f.t)

### Flat Lifting

class CoreValueIter:
  values: list[int|float]
  i: int

  def __init__(self, vs):
    self.values = vs
    self.i = 0

  def next(self, t):
    if self.i >= len(self.values):
      raise DecodeError("expected another {} core value after {!r}".format(t, self.values))
    v = self.values[self.i]
    self.i += 1
    match t:
      case 'i32' | 'i64':
        if type(v) is not int:
          raise DecodeError("expected {} core value, got {!r}".format(t, v))
        return v % (1 << int(t[1:]))
      case 'f32' | 'f64':
        if type(v) not in (int, float):
          raise DecodeError("expected {} core value, got {!r}".format(t, v))
        return float(v)
    assert(False)

  def done(self):
    return self.i == len(self.values)

def lift_flat(cx, vi, t):
  match t:
    case BoolType()         : return convert_int_to_bool(vi.next('i32'))
    case U8Type()           : return lift_flat_unsigned(vi, 32, 8)
    case U16Type()          : return lift_flat_unsigned(vi, 32, 16)
    case U32Type()          : return lift_flat_unsigned(vi, 32, 32)
    case U64Type()          : return lift_flat_unsigned(vi, 64, 64)
    case S8Type()           : return lift_flat_signed(vi, 32, 8)
    case S16Type()          : return lift_flat_signed(vi, 32, 16)
    case S32Type()          : return lift_flat_signed(vi, 32, 32)
    case S64Type()          : return lift_flat_signed(vi, 64, 64)
    case F32Type()          : return vi.next('f32')
    case F64Type()          : return vi.next('f64')
    case StringType()       : return lift_flat_string(cx, vi)
    case ListType(u)        : return lift_flat_list(cx, vi, u)
    case RecordType(fields) : return lift_flat_record(cx, vi, fields)
    case TupleType(ts)      : return tuple(lift_flat(cx, vi, u) for u in ts)
  assert(False)

def lift_flat_unsigned(vi, core_width, t_width):
  i = vi.next('i' + str(core_width))
  return i % (1 << t_width)

def lift_flat_signed(vi, core_width, t_width):
  i = vi.next('i' + str(core_width))
  i %= (1 << t_width)
  if i >= (1 << (t_width - 1)):
    return i - (1 << t_width)
  return i

def lift_flat_string(cx, vi):
  ptr = vi.next('i32')
  byte_length = vi.next('i32')
  return load_string_from_range(cx, ptr, byte_length)

def lift_flat_list(cx, vi, elem_type):
  ptr = vi.next('i32')
  length = vi.next('i32')
  return load_list_from_range(cx, ptr, length, elem_type)

def lift_flat_record(cx, vi, fields):
  record = {}
  for f in fields:
    record[f.label] = lift_flat(cx, vi, f.t)
  return record

### Flat Lowering

def lower_flat(cx, v, t):
  match t:
    case BoolType()         : return [int(v)]
    case U8Type()           : return [v]
    case U16Type()          : return [v]
    case U32Type()          : return [v]
    case U64Type()          : return [v]
    case S8Type()           : return lower_flat_signed(v, 32)
    case S16Type()          : return lower_flat_signed(v, 32)
    case S32Type()          : return lower_flat_signed(v, 32)
    case S64Type()          : return lower_flat_signed(v, 64)
    case F32Type()          : return [float(v)]
    case F64Type()          : return [float(v)]
    case StringType()       : return lower_flat_string(cx, v)
    case ListType(u)        : return lower_flat_list(cx, v, u)
    case RecordType(fields) : return lower_flat_record(cx, v, fields)
    case TupleType(ts)      : return [fv for u,e in zip(ts, v) for fv in lower_flat(cx, e, u)]
  assert(False)

def lower_flat_signed(i, core_bits):
  if i < 0:
    i += (1 << core_bits)
  return [i]

def lower_flat_string(cx, v):
  ptr, byte_length = store_string_into_range(cx, v)
  return [ptr, byte_length]

def lower_flat_list(cx, v, elem_type):
  ptr, length = store_list_into_range(cx, v, elem_type)
  return [ptr, length]

def lower_flat_record(cx, v, fields):
  flat = []
  for f in fields:
    flat += lower_flat(cx, v[f.label], f.t)
  return flat

### Lifting and Lowering Values

def lift_flat_values(cx, max_flat, vi, ts):
  flat_types = flatten_types(ts)
  if len(flat_types) > max_flat:
    return lift_heap_values(cx, vi, ts)
  else:
    return [ lift_flat(cx, vi, t) for t in ts ]

def lift_heap_values(cx, vi, ts):
  ptr = vi.next('i32')
  tuple_type = TupleType(ts)
  if ptr != align_to(ptr, alignment(tuple_type)):
    raise DecodeError("result area at {} is not {}-byte aligned".format(ptr, alignment(tuple_type)))
  cx.mem.check(ptr, elem_size(tuple_type))
  return list(load(cx, ptr, tuple_type))

def lower_flat_values(cx, max_flat, vs, ts):
  flat_types = flatten_types(ts)
  if len(flat_types) > max_flat:
    return lower_heap_values(cx, vs, ts)
  flat_vals = []
  for i in range(len(vs)):
    flat_vals += lower_flat(cx, vs[i], ts[i])
  return flat_vals

def lower_heap_values(cx, vs, ts):
  tuple_type = TupleType(ts)
  ptr = cx.realloc(0, 0, alignment(tuple_type), elem_size(tuple_type))
  if ptr != align_to(ptr, alignment(tuple_type)):
    raise AllocationFailure("reallocator returned {} for a {}-byte aligned request".format(ptr, alignment(tuple_type)))
  cx.mem.check(ptr, elem_size(tuple_type))
  store(cx, tuple(vs), tuple_type, ptr)
  return [ptr]
