class BridgeError(Exception): pass

class OutOfBounds(BridgeError): pass
class DecodeError(BridgeError): pass
class AllocationFailure(BridgeError): pass
class TrapDuringCall(BridgeError): pass
class TypeMismatch(BridgeError): pass
class SchemaValidationError(BridgeError): pass
class ReentrantCall(BridgeError): pass

class ExportNotFound(BridgeError):
  def __init__(self, name):
    super().__init__("no export named {!r}".format(name))
    self.name = name

class InstancePoisoned(BridgeError):
  def __init__(self, error):
    super().__init__("instance is unusable after {}: {}".format(type(error).__name__, error))
    self.error = error

# Errors after which the guest's memory can no longer be trusted.
FATAL_ERRORS = (TrapDuringCall, OutOfBounds)
