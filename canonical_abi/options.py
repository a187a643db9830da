from dataclasses import dataclass

MAX_FLAT_PARAMS = 16
MAX_FLAT_RESULTS = 1
MAX_STRING_BYTE_LENGTH = (1 << 31) - 1

@dataclass
class CanonicalOptions:
  memory: str = 'memory'
  realloc: str = 'cabi_realloc'
  post_return_prefix: str = 'cabi_post_'
  poison_on_fatal: bool = False

  def post_return_name(self, export_name):
    return self.post_return_prefix + export_name
