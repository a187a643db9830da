import logging
import threading
from dataclasses import dataclass
from enum import IntEnum

from .alloc import Allocator
from .codec import CoreValueIter, LiftLowerContext, check_value, lift_flat_values, lower_flat_values
from .errors import (FATAL_ERRORS, DecodeError, InstancePoisoned, ReentrantCall,
                     TrapDuringCall, TypeMismatch)
from .layout import flatten_functype
from .options import MAX_FLAT_PARAMS, MAX_FLAT_RESULTS
from .registry import ExportFunction
from .runtime import Trap

logger = logging.getLogger(__name__)

class CallState(IntEnum):
  IDLE = 0
  ARGUMENTS_LOWERED = 1
  RAW_CALL_INVOKED = 2
  RETURN_LIFTED = 3
  CLEANUP_INVOKED = 4

@dataclass
class PendingReturn:
  fn: ExportFunction
  flat_results: list
  cleaned_up: bool = False

class Dispatcher:
  """Runs export calls against one guest instance, one full call at a time.

  The instance lock covers the whole cycle from lowering the arguments to
  invoking the post-return export: the guest allocator has no concurrency
  control of its own, so buffers from two overlapping calls could collide.
  """

  state: CallState
  poisoned: Exception | None

  def __init__(self, guest, mem, opts):
    self.guest = guest
    self.mem = mem
    self.opts = opts
    self.lock = threading.Lock()
    self.owner = None
    self.state = CallState.IDLE
    self.poisoned = None
    self.allocators = {}

  def allocator(self, name):
    a = self.allocators.get(name)
    if a is None:
      a = self.allocators[name] = Allocator(self.guest.exports.get(name), name)
    return a

  def transition(self, state):
    logger.debug("%s -> %s", self.state.name, state.name)
    self.state = state

  def call(self, fn, args):
    if self.owner == threading.get_ident():
      raise ReentrantCall("{!r} called while this thread is already inside a call on the instance".format(fn.name))
    with self.lock:
      self.owner = threading.get_ident()
      try:
        if self.poisoned is not None:
          raise InstancePoisoned(self.poisoned) from self.poisoned
        try:
          return self.call_locked(fn, args)
        except FATAL_ERRORS as e:
          if self.opts.poison_on_fatal:
            logger.warning("poisoning instance after %s in %r: %s", type(e).__name__, fn.name, e)
            self.poisoned = e
          raise
      finally:
        self.transition(CallState.IDLE)
        self.owner = None

  def call_locked(self, fn, args):
    if len(args) != len(fn.params):
      raise TypeMismatch("{!r} takes {} arguments, got {}".format(fn.name, len(fn.params), len(args)))
    for (label,t),v in zip(fn.params, args):
      check_value(t, v, label)

    cx = LiftLowerContext(self.mem, self.allocator(fn.realloc) if fn.realloc else None)
    flat_args = lower_flat_values(cx, MAX_FLAT_PARAMS, list(args), fn.param_types())
    self.transition(CallState.ARGUMENTS_LOWERED)

    try:
      flat_results = self.guest.exports[fn.name](*flat_args)
    except Trap as e:
      raise TrapDuringCall("{!r} trapped: {}".format(fn.name, e)) from e
    self.transition(CallState.RAW_CALL_INVOKED)

    pending = PendingReturn(fn, list(flat_results))
    expected = flatten_functype(fn).results
    if len(pending.flat_results) != len(expected):
      if fn.has_post_return:
        logger.warning("not calling %s: %r returned %d core values, expected %d",
                       fn.post_return, fn.name, len(pending.flat_results), len(expected))
      raise DecodeError("{!r} returned {} core values, expected {}".format(
        fn.name, len(pending.flat_results), len(expected)))
    try:
      result = self.lift_result(cx, pending)
      self.transition(CallState.RETURN_LIFTED)
    finally:
      self.cleanup(pending)
    return result

  def lift_result(self, cx, pending):
    fn = pending.fn
    if fn.result is None:
      return None
    vi = CoreValueIter(pending.flat_results)
    [result] = lift_flat_values(cx, MAX_FLAT_RESULTS, vi, fn.result_types())
    return result

  def cleanup(self, pending):
    assert(not pending.cleaned_up)
    pending.cleaned_up = True
    fn = pending.fn
    if not fn.has_post_return:
      return
    logger.debug("%s(%s)", fn.post_return, pending.flat_results)
    try:
      self.guest.exports[fn.post_return](*pending.flat_results)
    except Trap as e:
      raise TrapDuringCall("post-return {!r} trapped: {}".format(fn.post_return, e)) from e
    self.transition(CallState.CLEANUP_INVOKED)
