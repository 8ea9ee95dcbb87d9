"""
Part of il2cppfile

Thin wrapper around capstone. Decoded instructions are copied into immutable records that carry only what the
registration recovery needs (mnemonic, operand kinds, register names, displacements and immediates), so the
heuristics never touch capstone objects and can be exercised with hand-built instruction streams.
"""

from dataclasses import dataclass
from enum import IntEnum
from typing import List, Optional, Tuple

import capstone
from capstone import x86

from .constants import PROGRAM_COUNTER_REGISTERS


class OperandType(IntEnum):
    INVALID = 0
    REGISTER = 1
    IMMEDIATE = 2
    MEMORY = 3


CAPSTONE_OPERAND_TYPES = {
    x86.X86_OP_REG: OperandType.REGISTER,
    x86.X86_OP_IMM: OperandType.IMMEDIATE,
    x86.X86_OP_MEM: OperandType.MEMORY
}


@dataclass(frozen=True)
class Operand:
    type: OperandType
    register: Optional[str] = None
    base: Optional[str] = None
    displacement: int = 0
    immediate: int = 0

    @property
    def is_pc_relative(self) -> bool:
        return self.type == OperandType.MEMORY and self.base in PROGRAM_COUNTER_REGISTERS


@dataclass(frozen=True)
class Instruction:
    address: int
    size: int
    mnemonic: str
    operands: Tuple[Operand, ...] = ()
    op_str: str = ''

    def __str__(self):
        return f'0x{self.address:x}: {self.mnemonic} {self.op_str}'.rstrip()

    @property
    def next_address(self) -> int:
        return self.address + self.size

    @property
    def is_call(self) -> bool:
        return self.mnemonic == 'call'

    @property
    def is_jump(self) -> bool:
        return self.mnemonic == 'jmp'

    @property
    def is_lea(self) -> bool:
        return self.mnemonic == 'lea'

    @property
    def is_mov(self) -> bool:
        return self.mnemonic == 'mov'

    @property
    def is_breakpoint(self) -> bool:
        return self.mnemonic == 'int3'

    def get_operand(self, index: int) -> Optional[Operand]:
        if -len(self.operands) <= index < len(self.operands):
            return self.operands[index]

        return None

    def branch_target(self) -> Optional[int]:
        """
        Absolute target of a direct call or jump, None for indirect ones
        """
        operand = self.get_operand(0)
        if operand is None or operand.type != OperandType.IMMEDIATE:
            return None

        return operand.immediate

    def memory_target(self, index: int) -> Optional[int]:
        """
        Absolute address read or written by a program counter relative memory operand
        """
        operand = self.get_operand(index)
        if operand is None or not operand.is_pc_relative:
            return None

        return self.next_address + operand.displacement

    def writes_register(self, register: str) -> bool:
        operand = self.get_operand(0)
        return operand is not None and operand.type == OperandType.REGISTER and operand.register == register


class Disassembler:
    def __init__(self, is_32bit: bool = False):
        mode = capstone.CS_MODE_32 if is_32bit else capstone.CS_MODE_64
        self.cs = capstone.Cs(capstone.CS_ARCH_X86, mode)
        self.cs.detail = True

    @staticmethod
    def _convert_operand(insn, op) -> Operand:
        operand_type = CAPSTONE_OPERAND_TYPES.get(op.type, OperandType.INVALID)

        if operand_type == OperandType.REGISTER:
            return Operand(operand_type, register=insn.reg_name(op.reg))
        if operand_type == OperandType.IMMEDIATE:
            return Operand(operand_type, immediate=op.imm)
        if operand_type == OperandType.MEMORY:
            base = insn.reg_name(op.mem.base) if op.mem.base else None
            return Operand(operand_type, base=base, displacement=op.mem.disp)

        return Operand(operand_type)

    def _convert(self, insn) -> Instruction:
        # Skipped data bytes carry no detail
        operands = () if insn.id == 0 else tuple(self._convert_operand(insn, op) for op in insn.operands)

        return Instruction(address=insn.address, size=insn.size, mnemonic=insn.mnemonic, operands=operands,
                           op_str=insn.op_str)

    def disassemble(self, code: bytes, address: int, count: int = 0, skip_data: bool = False) -> List[Instruction]:
        """
        Linear sweep over a byte window.

        :param code: bytes to decode
        :param address: virtual address of the first byte
        :param count: maximum number of instructions, 0 for no limit
        :param skip_data: keep decoding past bytes that are not valid instructions
        """
        self.cs.skipdata = skip_data

        return [self._convert(insn) for insn in self.cs.disasm(code, address, count)]
