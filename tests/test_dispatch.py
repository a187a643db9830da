import struct
import threading

import pytest

from canonical_abi import Instance
from canonical_abi.dispatch import CallState
from canonical_abi.errors import *
from canonical_abi.options import CanonicalOptions
from canonical_abi.registry import ExportFunction
from canonical_abi.runtime import Trap
from canonical_abi.valtypes import *

from tests.guest import FakeGuest

POINT = RecordType([FieldType('x', U32Type()), FieldType('y', U32Type())])
RUN_RESULT = RecordType([FieldType('machine_id', U64Type()), FieldType('message', StringType())])

FUNCTIONS = [
  ExportFunction('count-symbols', [('s', StringType())], U32Type()),
  ExportFunction('echo', [('s', StringType())], StringType()),
  ExportFunction('reverse', [('bytes', ListType(U8Type()))], ListType(U8Type())),
  ExportFunction('run', [('machine', U64Type()), ('start', POINT), ('destination', POINT)], RUN_RESULT),
  ExportFunction('is-even', [('n', S32Type())], BoolType()),
  ExportFunction('reset', [], None),
  ExportFunction('fail', [], StringType()),
  ExportFunction('sum17', [(str(i), U8Type()) for i in range(17)], U32Type()),
]

def mk_guest(delay = 0):
  guest = FakeGuest()

  def count_symbols(ptr, length):
    return [len(guest.read_string(ptr, length))]

  def echo(ptr, length):
    return [guest.return_string(guest.read_string(ptr, length))]

  def reverse(ptr, length):
    data = guest.alloc(guest.read(ptr, length)[::-1])
    return [guest.alloc(struct.pack('<II', data, length), 4)]

  def run(machine, sx, sy, dx, dy):
    message = "machine {} moved from ({}, {}) to ({}, {})".format(machine, sx, sy, dx, dy).encode('utf-8')
    begin = guest.alloc(message)
    return [guest.alloc(struct.pack('<QII', machine, begin, len(message)), 8)]

  def is_even(n):
    return [2 if n % 2 == 0 else 0]

  def fail():
    raise Trap('unreachable')

  def sum17(ptr):
    return [sum(guest.read(ptr, 17))]

  guest.export('count-symbols', count_symbols)
  guest.export('echo', echo, delay = delay)
  guest.export('cabi_post_echo', lambda ptr: [])
  guest.export('reverse', reverse)
  guest.export('cabi_post_reverse', lambda ptr: [])
  guest.export('run', run)
  guest.export('cabi_post_run', lambda ptr: [])
  guest.export('is-even', is_even)
  guest.export('reset', lambda: [])
  guest.export('fail', fail)
  guest.export('cabi_post_fail', lambda ptr: [])
  guest.export('sum17', sum17)
  return guest

def mk_instance(guest = None, opts = None):
  guest = guest or mk_guest()
  return guest, Instance(guest, FUNCTIONS, opts)

def entered(guest):
  return [e[1] for e in guest.log if e[0] == 'enter']

def test_count_symbols():
  guest, inst = mk_instance()
  s = "string with symbols (~25)"
  assert(inst.call('count-symbols', s) == len(s))
  s = "symbols: ✓ ünïcödé €"
  assert(inst.call('count-symbols', s) == len(s))
  assert(len(s) != len(s.encode('utf-8')))
  assert(guest.calls('cabi_realloc') == [(0, 0, 1, len("string with symbols (~25)")),
                                         (0, 0, 1, len(s.encode('utf-8')))])

def test_string_in_string_out():
  guest, inst = mk_instance()
  assert(inst.call('echo', "string with symbols (~25)") == "string with symbols (~25)")
  assert(inst.call('echo', "") == "")
  assert(len(guest.calls('cabi_post_echo')) == 2)

def test_list_in_list_out():
  guest, inst = mk_instance()
  assert(inst.call('reverse', [5,4,3,2,1,10]) == [10,1,2,3,4,5])
  assert(inst.call('reverse', b'\x01\x02') == [2,1])

def test_run_scenario():
  guest, inst = mk_instance()
  got = inst.call('run', 7, {'x': 0, 'y': 0}, {'x': 10, 'y': 10})
  assert(got == {'machine_id': 7, 'message': 'machine 7 moved from (0, 0) to (10, 10)'})
  [(args)] = guest.calls('run')
  assert(args == (7, 0, 0, 10, 10))
  [(area,)] = guest.calls('cabi_post_run')
  assert(area % 8 == 0)
  assert(entered(guest) == ['run', 'cabi_post_run'])
  assert(inst.dispatcher.state == CallState.IDLE)

def test_bool_result():
  _, inst = mk_instance()
  assert(inst.call('is-even', -4) is True)
  assert(inst.call('is-even', 3) is False)

def test_no_result():
  guest, inst = mk_instance()
  assert(inst.call('reset') is None)
  guest.export('reset', lambda: [1])
  with pytest.raises(DecodeError):
    inst.call('reset')

def test_spilled_params():
  guest, inst = mk_instance()
  assert(inst.call('sum17', *range(17)) == sum(range(17)))
  [(ptr,)] = guest.calls('sum17')
  assert(guest.calls('cabi_realloc') == [(0, 0, 1, 17)])

def test_export_handle():
  _, inst = mk_instance()
  count = inst.export('count-symbols')
  assert(count("abc") == 3)
  with pytest.raises(ExportNotFound):
    inst.export('nope')
  with pytest.raises(ExportNotFound):
    inst.call('nope')

def test_cleanup_exactly_once_on_decode_error():
  guest = mk_guest()
  def bad_echo(ptr, length):
    return [guest.alloc(struct.pack('<II', guest.alloc(b'\xff\xfe'), 2), 4)]
  guest.export('echo', bad_echo)
  _, inst = mk_instance(guest)
  with pytest.raises(DecodeError):
    inst.call('echo', "abc")
  assert(len(guest.calls('cabi_post_echo')) == 1)
  assert(entered(guest)[-2:] == ['echo', 'cabi_post_echo'])
  assert(inst.dispatcher.state == CallState.IDLE)

def test_cleanup_exactly_once_on_out_of_bounds():
  guest = mk_guest()
  guest.export('reverse', lambda ptr, length: [guest.alloc(struct.pack('<II', 1 << 20, 4), 4)])
  _, inst = mk_instance(guest)
  with pytest.raises(OutOfBounds):
    inst.call('reverse', [1, 2, 3, 4])
  assert(len(guest.calls('cabi_post_reverse')) == 1)

def test_cleanup_receives_raw_result():
  guest, inst = mk_instance()
  results = []
  echo = guest.exports['echo']
  def spy(*args):
    results.append(echo(*args))
    return results[-1]
  guest.exports['echo'] = spy
  inst.call('echo', "hello")
  assert([tuple(r) for r in results] == guest.calls('cabi_post_echo'))

def test_trap_during_call_skips_cleanup():
  guest, inst = mk_instance()
  with pytest.raises(TrapDuringCall) as e:
    inst.call('fail')
  assert(isinstance(e.value.__cause__, Trap))
  assert(guest.calls('cabi_post_fail') == [])
  assert(inst.poisoned is None)
  assert(inst.call('count-symbols', "still usable") == 12)

def test_trap_during_cleanup():
  guest = mk_guest()
  def bad_post(ptr):
    raise Trap('double free')
  guest.export('cabi_post_echo', bad_post)
  _, inst = mk_instance(guest)
  with pytest.raises(TrapDuringCall, match='post-return'):
    inst.call('echo', "abc")

def test_allocation_failure_skips_call():
  guest = mk_guest()
  def realloc(*args):
    raise Trap('out of memory')
  guest.export('cabi_realloc', realloc)
  _, inst = mk_instance(guest)
  with pytest.raises(AllocationFailure):
    inst.call('echo', "abc")
  assert(guest.calls('echo') == [])
  assert(guest.calls('cabi_post_echo') == [])

def test_allocation_beyond_memory():
  guest, inst = mk_instance()
  with pytest.raises(AllocationFailure):
    inst.call('count-symbols', 'x' * 70000)
  assert(guest.calls('count-symbols') == [])

@pytest.mark.parametrize('name,args', [
  ('count-symbols', ()),
  ('count-symbols', ("a", "b")),
  ('count-symbols', (b'abc',)),
  ('run', (7, {'x': 0, 'y': 0}, {'x': 10})),
  ('run', (-7, {'x': 0, 'y': 0}, {'x': 10, 'y': 10})),
  ('is-even', (1 << 31,)),
])
def test_type_mismatch_before_memory_mutation(name, args):
  guest, inst = mk_instance()
  before = bytes(guest.memory.bytes)
  with pytest.raises(TypeMismatch):
    inst.call(name, *args)
  assert(guest.log == [])
  assert(bytes(guest.memory.bytes) == before)

def test_calls_are_serialized():
  guest, inst = mk_instance(mk_guest(delay = 0.05))
  results = []
  def worker(s):
    results.append(inst.call('echo', s))
  threads = [threading.Thread(target = worker, args = (s,)) for s in ["first", "second"]]
  for t in threads:
    t.start()
  for t in threads:
    t.join()
  assert(sorted(results) == ["first", "second"])
  assert(entered(guest) == ['cabi_realloc', 'echo', 'cabi_post_echo'] * 2)

def test_reentrant_call():
  guest, inst = mk_instance()
  def reenter():
    inst.call('count-symbols', "abc")
    return []
  guest.export('reset', reenter)
  with pytest.raises(ReentrantCall):
    inst.call('reset')
  assert(inst.call('count-symbols', "abc") == 3)

def test_poison_on_fatal():
  guest, inst = mk_instance(opts = CanonicalOptions(poison_on_fatal = True))
  with pytest.raises(TypeMismatch):
    inst.call('count-symbols', 3)
  assert(inst.poisoned is None)
  with pytest.raises(TrapDuringCall) as trap:
    inst.call('fail')
  assert(inst.poisoned is trap.value)
  with pytest.raises(InstancePoisoned) as e:
    inst.call('count-symbols', "abc")
  assert(e.value.error is trap.value)
  assert(guest.calls('count-symbols') == [])

def test_instances_are_independent():
  first, a = mk_instance()
  second, b = mk_instance()
  assert(a.call('echo', "a") == "a")
  assert(b.call('echo', "b") == "b")
  assert(len(first.calls('echo')) == len(second.calls('echo')) == 1)

def test_float_out_of_range_before_allocation():
  guest = FakeGuest()
  guest.export('sum-f32', lambda ptr, length: [sum(struct.unpack('<{}f'.format(length), guest.read(ptr, 4 * length)))])
  guest.export('half', lambda x: [x / 2])
  inst = Instance(guest, [ExportFunction('sum-f32', [('xs', ListType(F32Type()))], F32Type()),
                          ExportFunction('half', [('x', F64Type())], F64Type())])
  assert(inst.call('sum-f32', [1.5, 2.5]) == 4.0)
  assert(inst.call('half', 10**300) == 5e299)
  guest.log.clear()
  with pytest.raises(TypeMismatch, match=r'xs\[0\]'):
    inst.call('sum-f32', [1e39])
  with pytest.raises(TypeMismatch):
    inst.call('half', 10**400)
  assert(guest.calls('cabi_realloc') == [])
  assert(guest.log == [])

@pytest.mark.parametrize('flat_results', [[], [16, 0]])
def test_wrong_result_count_skips_cleanup(flat_results, caplog):
  guest = mk_guest()
  guest.export('echo', lambda ptr, length: flat_results)
  _, inst = mk_instance(guest, CanonicalOptions(poison_on_fatal = True))
  with pytest.raises(DecodeError, match='core values'):
    inst.call('echo', "abc")
  assert(guest.calls('cabi_post_echo') == [])
  assert('not calling cabi_post_echo' in caplog.text)
  assert(inst.poisoned is None)
  assert(inst.dispatcher.state == CallState.IDLE)
