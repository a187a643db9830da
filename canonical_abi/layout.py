from dataclasses import dataclass

from .options import MAX_FLAT_PARAMS, MAX_FLAT_RESULTS
from .valtypes import *

@dataclass
class CoreFuncType:
  params: list[str]
  results: list[str]
  def __eq__(self, other):
    return self.params == other.params and self.results == other.results

### Alignment

def alignment(t):
  match despecialize(t):
    case BoolType()            : return 1
    case S8Type() | U8Type()   : return 1
    case S16Type() | U16Type() : return 2
    case S32Type() | U32Type() : return 4
    case S64Type() | U64Type() : return 8
    case F32Type()             : return 4
    case F64Type()             : return 8
    case StringType()          : return 4
    case ListType()            : return 4
    case RecordType(fields)    : return alignment_record(fields)
  assert(False)

def alignment_record(fields):
  a = 1
  for f in fields:
    a = max(a, alignment(f.t))
  return a

### Element Size

def elem_size(t):
  match despecialize(t):
    case BoolType()            : return 1
    case S8Type() | U8Type()   : return 1
    case S16Type() | U16Type() : return 2
    case S32Type() | U32Type() : return 4
    case S64Type() | U64Type() : return 8
    case F32Type()             : return 4
    case F64Type()             : return 8
    case StringType()          : return 8
    case ListType()            : return 8
    case RecordType(fields)    : return elem_size_record(fields)
  assert(False)

def elem_size_record(fields):
  s = 0
  for f in fields:
    s = align_to(s, alignment(f.t))
    s += elem_size(f.t)
  assert(s > 0)
  return align_to(s, alignment_record(fields))

def align_to(ptr, alignment):
  return -(-ptr // alignment) * alignment

def field_offsets(fields):
  offsets = []
  s = 0
  for f in fields:
    s = align_to(s, alignment(f.t))
    offsets.append(s)
    s += elem_size(f.t)
  return offsets

### Flattening

def flatten_functype(fn):
  flat_params = flatten_types(fn.param_types())
  flat_results = flatten_types(fn.result_types())
  if len(flat_params) > MAX_FLAT_PARAMS:
    flat_params = ['i32']
  if len(flat_results) > MAX_FLAT_RESULTS:
    flat_results = ['i32']
  return CoreFuncType(flat_params, flat_results)

def flatten_types(ts):
  return [ft for t in ts for ft in flatten_type(t)]

def flatten_type(t):
  match despecialize(t):
    case BoolType()                       : return ['i32']
    case U8Type() | U16Type() | U32Type() : return ['i32']
    case S8Type() | S16Type() | S32Type() : return ['i32']
    case S64Type() | U64Type()            : return ['i64']
    case F32Type()                        : return ['f32']
    case F64Type()                        : return ['f64']
    case StringType()                     : return ['i32', 'i32']
    case ListType()                       : return ['i32', 'i32']
    case RecordType(fields)               : return flatten_record(fields)
  assert(False)

def flatten_record(fields):
  flat = []
  for f in fields:
    flat += flatten_type(f.t)
  return flat
