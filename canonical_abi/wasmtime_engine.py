"""Runs guests on wasmtime.

    functions = load_functions(open('strings.json').read())
    strings = load_instance('strings.wasm', functions)
    strings.call('count-symbols', 'string with symbols (~25)')
"""

import logging
from functools import partial
from typing import Optional

import wasmtime

from .errors import SchemaValidationError
from .instance import Instance
from .layout import CoreFuncType
from .options import CanonicalOptions
from .runtime import GuestInstance, GuestMemory, Trap

logger = logging.getLogger(__name__)

CORE_TYPES = ('i32', 'i64', 'f32', 'f64')

def core_type_name(vt):
  for name in CORE_TYPES:
    if vt == getattr(wasmtime.ValType, name)():
      return name
  return str(vt)

def to_signed(v, t):
  match t:
    case 'i32' if v >= (1 << 31) : return v - (1 << 32)
    case 'i64' if v >= (1 << 63) : return v - (1 << 64)
  return v

class WasmtimeMemory(GuestMemory):
  def __init__(self, store, memory):
    self.store = store
    self.memory = memory

  def data_len(self):
    return self.memory.data_len(self.store)

  def read(self, start, stop):
    return self.memory.read(self.store, start, stop)

  def write(self, data, start):
    self.memory.write(self.store, data, start)

class WasmtimeGuest(GuestInstance):
  store: wasmtime.Store
  funcs: dict[str, wasmtime.Func]

  def __init__(self, store, module, instance, memory_export = 'memory'):
    self.store = store
    extern = instance.exports(store)
    self.funcs = {}
    memory = None
    for e in module.exports:
      item = extern[e.name]
      if isinstance(item, wasmtime.Func):
        self.funcs[e.name] = item
      elif isinstance(item, wasmtime.Memory) and e.name == memory_export:
        memory = item
    if memory is None:
      raise SchemaValidationError("module does not export a memory named {!r}".format(memory_export))
    self.memory = WasmtimeMemory(store, memory)
    self.exports = { name: partial(self.invoke, name) for name in self.funcs }
    logger.debug("instantiated module with %d function exports", len(self.funcs))

  def core_type(self, name) -> Optional[CoreFuncType]:
    ft = self.funcs[name].type(self.store)
    return CoreFuncType([core_type_name(vt) for vt in ft.params],
                        [core_type_name(vt) for vt in ft.results])

  def invoke(self, name, *args):
    func = self.funcs[name]
    params = [core_type_name(vt) for vt in func.type(self.store).params]
    args = [to_signed(v, t) if type(v) is int else v for v,t in zip(args, params)]
    try:
      results = func(self.store, *args)
    except (wasmtime.Trap, wasmtime.WasmtimeError) as e:
      raise Trap(str(e)) from e
    if results is None:
      return []
    if isinstance(results, list):
      return results
    return [results]

  @classmethod
  def from_module(cls, engine, module, wasi = False, memory_export = 'memory'):
    store = wasmtime.Store(engine)
    linker = wasmtime.Linker(engine)
    if wasi:
      linker.define_wasi()
      store.set_wasi(wasmtime.WasiConfig())
    instance = linker.instantiate(store, module)
    return cls(store, module, instance, memory_export)

  @classmethod
  def from_file(cls, path, wasi = False, memory_export = 'memory'):
    engine = wasmtime.Engine()
    module = wasmtime.Module.from_file(engine, str(path))
    return cls.from_module(engine, module, wasi, memory_export)

  @classmethod
  def from_wat(cls, text, wasi = False, memory_export = 'memory'):
    engine = wasmtime.Engine()
    module = wasmtime.Module(engine, text)
    return cls.from_module(engine, module, wasi, memory_export)

def load_instance(path, functions, opts = None, wasi = False):
  opts = opts or CanonicalOptions()
  guest = WasmtimeGuest.from_file(path, wasi, opts.memory)
  return Instance(guest, functions, opts)
