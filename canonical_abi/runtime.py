"""Interface the bridge consumes from a WebAssembly engine.

An engine adapter provides a `GuestInstance`: a linear `memory` and an
`exports` mapping from export name to a callable that takes flat core values
(ints for i32/i64, floats for f32/f64) and returns the list of flat results.
Guest traps must surface as `Trap`, never as the engine's own exception type.
"""

from typing import Callable, Mapping, Optional

from .layout import CoreFuncType

WASM_PAGE_SIZE = 1 << 16

class Trap(Exception): pass

class GuestMemory:
  def data_len(self) -> int:
    raise NotImplementedError

  def read(self, start: int, stop: int) -> bytes:
    raise NotImplementedError

  def write(self, data: bytes, start: int) -> None:
    raise NotImplementedError

class GuestInstance:
  memory: GuestMemory
  exports: Mapping[str, Callable[..., list]]

  def core_type(self, name: str) -> Optional[CoreFuncType]:
    return None

class BytearrayMemory(GuestMemory):
  def __init__(self, arg = 0):
    if isinstance(arg, int):
      arg = arg * WASM_PAGE_SIZE
    self.bytes = bytearray(arg)

  def data_len(self):
    return len(self.bytes)

  def read(self, start, stop):
    return bytes(self.bytes[start:stop])

  def write(self, data, start):
    self.bytes[start : start+len(data)] = data

  def grow(self, delta_pages):
    old_pages = len(self.bytes) // WASM_PAGE_SIZE
    self.bytes.extend(bytes(delta_pages * WASM_PAGE_SIZE))
    return old_pages
