import pytest
from il2cppfile.disassembler import Disassembler, OperandType


@pytest.fixture(scope='module')
def disassembler():
    return Disassembler()


def test_rip_relative_lea(disassembler):
    instruction, = disassembler.disassemble(b'\x48\x8d\x15\x10\x00\x00\x00', 0x1000)

    assert instruction.is_lea
    assert instruction.size == 7
    assert instruction.writes_register('rdx')
    assert not instruction.writes_register('rcx')
    assert instruction.get_operand(1).is_pc_relative
    assert instruction.memory_target(1) == 0x1017
    assert instruction.memory_target(-1) == 0x1017
    assert instruction.memory_target(0) is None


def test_direct_call_and_jump(disassembler):
    call, jump = disassembler.disassemble(b'\xe8\xfb\x00\x00\x00\xe9\xf6\x0f\x00\x00', 0x1000)

    assert call.is_call and not call.is_jump
    assert call.branch_target() == 0x1100
    assert jump.is_jump
    assert jump.address == 0x1005
    assert jump.branch_target() == 0x2000


def test_indirect_call(disassembler):
    instruction, = disassembler.disassemble(b'\xff\xd0', 0x1000)

    assert instruction.is_call
    assert instruction.get_operand(0).type == OperandType.REGISTER
    assert instruction.branch_target() is None


def test_global_store_and_load(disassembler):
    store, load = disassembler.disassemble(b'\x48\x89\x05\xf9\x0f\x00\x00\x48\x8b\x05\xf2\x0f\x00\x00', 0x1000)

    assert store.is_mov and load.is_mov
    assert store.memory_target(0) == 0x2000
    assert store.memory_target(1) is None
    assert load.memory_target(1) == 0x2000
    assert load.memory_target(0) is None


def test_breakpoint(disassembler):
    instructions = disassembler.disassemble(b'\xcc\xcc', 0x1000)

    assert [i.is_breakpoint for i in instructions] == [True, True]
    assert instructions[1].next_address == 0x1002


def test_count_limits_decoding(disassembler):
    assert len(disassembler.disassemble(b'\x90' * 8, 0x1000, count=2)) == 2


def test_invalid_bytes_stop_linear_sweep(disassembler):
    assert disassembler.disassemble(b'\x06\xcc', 0x1000) == []


def test_skip_data_continues_past_invalid_bytes(disassembler):
    skipped, breakpoint = disassembler.disassemble(b'\x06\xcc', 0x1000, skip_data=True)

    assert skipped.operands == ()
    assert skipped.address == 0x1000
    assert breakpoint.is_breakpoint
    assert breakpoint.address == 0x1001


def test_32bit_absolute_operand_is_not_pc_relative():
    lea, = Disassembler(is_32bit=True).disassemble(b'\x8d\x15\x34\x12\x00\x00', 0x401000)

    assert lea.is_lea
    assert lea.writes_register('edx')
    assert not lea.get_operand(1).is_pc_relative
    assert lea.memory_target(1) is None


def test_instruction_str(disassembler):
    instruction, = disassembler.disassemble(b'\xcc', 0x1000)
    assert str(instruction) == '0x1000: int3'
