from .errors import OutOfBounds
from .runtime import GuestMemory

MAX_OFFSET = 1 << 32

class MemoryAccessor:
  """Bounds-checked view over a guest's linear memory.

  The current length is re-read on every access: any guest call, including
  the reallocator, may have grown the memory since the last one.
  """

  raw: GuestMemory

  def __init__(self, raw):
    self.raw = raw

  def __len__(self):
    return self.raw.data_len()

  def check(self, offset, length):
    if type(offset) is not int or type(length) is not int:
      raise OutOfBounds("non-integer range {!r}+{!r}".format(offset, length))
    if offset < 0 or length < 0 or offset >= MAX_OFFSET or length > MAX_OFFSET:
      raise OutOfBounds("unrepresentable range {}+{}".format(offset, length))
    mem_len = self.raw.data_len()
    if offset + length > mem_len:
      raise OutOfBounds("range {}+{} exceeds memory length {}".format(offset, length, mem_len))

  def read(self, offset, length) -> bytes:
    self.check(offset, length)
    return bytes(self.raw.read(offset, offset + length))

  def write(self, offset, data) -> None:
    self.check(offset, len(data))
    self.raw.write(bytes(data), offset)

  def load_int(self, ptr, nbytes, signed = False):
    return int.from_bytes(self.read(ptr, nbytes), 'little', signed = signed)

  def store_int(self, v, ptr, nbytes, signed = False):
    self.write(ptr, int.to_bytes(v, nbytes, 'little', signed = signed))
