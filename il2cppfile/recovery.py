"""
Part of il2cppfile

Fallback recovery of the code and metadata registration addresses for images where the primary search fails.

il2cpp_init tail-calls (or calls) Runtime::Init. Runtime::Init reads the framework version string and a few calls
later invokes ExecuteInitializations, whose second instruction loads the global list of initialization callbacks.
Exactly one instruction in .text stores into that list, inside the small function that registers a callback. The
registration call site passes s_Il2CppCodegenRegistration in rdx, and that function loads the metadata registration
into rdx and the code registration into rcx before jumping to il2cpp_codegen_register.

Each step below takes decoded instructions and either returns what the next step needs or raises
RecoveryAborted with the reason. Nothing is guessed: a missing or ambiguous match ends the whole chain.
"""

from concurrent.futures import ThreadPoolExecutor
from functools import partial
from typing import List, Optional, Sequence, Tuple, TYPE_CHECKING

from .disassembler import Disassembler, Instruction
from .parser import MissingExportDirectoryError, Il2CppFormatError
from .constants import (INIT_EXPORT_NAME, METHOD_BODY_WINDOW_SIZE, PEEK_INSTRUCTION_COUNT,
                        EXECUTE_INITIALIZATIONS_CALL_NUMBER, CALLBACK_ARGUMENT_REGISTER,
                        METADATA_REGISTRATION_REGISTER, CODE_REGISTRATION_REGISTER, PARALLEL_FILTER_CHUNK_SIZE)

if TYPE_CHECKING:
    from .parser import Il2CppPEParser


class RecoveryAborted(Exception):
    def __init__(self, value):
        self.value = value

    def __str__(self):
        return repr(self.value)


def find_runtime_init(instructions: Sequence[Instruction]) -> int:
    """
    Older il2cpp_init bodies tail-jump into Runtime::Init, newer ones call it last
    """
    call = next((i for i in instructions if i.is_jump), None)
    if call is None:
        call = next((i for i in reversed(instructions) if i.is_call), None)

    if call is None:
        raise RecoveryAborted('il2cpp_init neither jumps nor calls into Runtime::Init')

    target = call.branch_target()
    if target is None:
        raise RecoveryAborted(f'Call to Runtime::Init is indirect: {call}')

    return target


def find_execute_initializations(instructions: Sequence[Instruction]) -> int:
    # 2018 builds have an extra call before the version string is read
    minimum_index = next((index for index, i in enumerate(instructions) if i.is_call), -1)

    version_load_index = next((index for index, i in enumerate(instructions)
                               if index > minimum_index and i.is_lea and i.memory_target(-1) is not None), None)
    if version_load_index is None:
        raise RecoveryAborted('Runtime::Init does not load a global after its first call')

    calls = [i for i in instructions[version_load_index + 1:] if i.is_call]
    if len(calls) < EXECUTE_INITIALIZATIONS_CALL_NUMBER:
        raise RecoveryAborted(f'Runtime::Init makes only {len(calls)} calls after the version string load')

    call = calls[EXECUTE_INITIALIZATIONS_CALL_NUMBER - 1]
    target = call.branch_target()
    if target is None:
        raise RecoveryAborted(f'Call to ExecuteInitializations is indirect: {call}')

    return target


def find_callback_list(instructions: Sequence[Instruction]) -> int:
    if len(instructions) < 2 or not instructions[1].is_mov:
        raise RecoveryAborted('Missing or invalid second instruction in ExecuteInitializations')

    callback_list = instructions[1].memory_target(1)
    if callback_list is None:
        raise RecoveryAborted(f'Second instruction of ExecuteInitializations is not a global read: {instructions[1]}')

    return callback_list


def _filter_writes(chunk: Sequence[Tuple[int, Instruction]], target: int) -> List[int]:
    return [index for index, instruction in chunk if instruction.memory_target(0) == target]


def find_callback_list_write(instructions: Sequence[Instruction], callback_list: int) -> int:
    """
    Return the index of the single MOV storing into the callback list
    """
    candidates = [(index, i) for index, i in enumerate(instructions) if i.is_mov and i.memory_target(0) is not None]
    chunks = [candidates[start:start + PARALLEL_FILTER_CHUNK_SIZE]
              for start in range(0, len(candidates), PARALLEL_FILTER_CHUNK_SIZE)]

    with ThreadPoolExecutor() as executor:
        references = [index for matches in executor.map(partial(_filter_writes, target=callback_list), chunks)
                      for index in matches]

    if len(references) != 1:
        raise RecoveryAborted(f'Expected exactly one write to the callback list at 0x{callback_list:x}, '
                              f'found {len(references)} among {len(candidates)} global MOVs')

    return references[0]


def find_register_callback_call(instructions: Sequence[Instruction], write_index: int) -> int:
    """
    Walk back from the callback list write to the int3 padding in front of the enclosing function, then return
    the index of the call or jump into that function.
    """
    breakpoint_index = next((index for index in range(write_index - 1, -1, -1) if instructions[index].is_breakpoint),
                            None)
    if breakpoint_index is None:
        raise RecoveryAborted('No int3 padding in front of the callback registration function')

    entry = instructions[breakpoint_index + 1].address

    call_index = next((index for index, i in enumerate(instructions)
                       if (i.is_call or i.is_jump) and i.branch_target() == entry), None)
    if call_index is None:
        raise RecoveryAborted(f'Nothing calls the callback registration function at 0x{entry:x}')

    return call_index


def find_argument_load(instructions: Sequence[Instruction], call_index: int,
                       register: str = CALLBACK_ARGUMENT_REGISTER) -> int:
    load = next((instructions[index] for index in range(call_index, -1, -1)
                 if instructions[index].is_lea and instructions[index].writes_register(register)), None)
    if load is None:
        raise RecoveryAborted(f'No LEA into {register} before the callback registration call')

    target = load.memory_target(1)
    if target is None:
        raise RecoveryAborted(f'Argument load is not a global reference: {load}')

    return target


def find_registration_loads(instructions: Sequence[Instruction]) -> Tuple[int, int]:
    """
    s_Il2CppCodegenRegistration is LEA, LEA, LEA, JMP. Returns (code registration, metadata registration).
    """
    def load_target(register: str) -> Optional[int]:
        load = next((i for i in instructions if i.is_lea and i.writes_register(register)), None)
        return None if load is None else load.memory_target(1)

    metadata_registration = load_target(METADATA_REGISTRATION_REGISTER)
    code_registration = load_target(CODE_REGISTRATION_REGISTER)

    if metadata_registration is None or code_registration is None:
        raise RecoveryAborted('s_Il2CppCodegenRegistration does not load both registrations')

    return code_registration, metadata_registration


class RegistrationRecovery:
    def __init__(self, pe: 'Il2CppPEParser', disassembler: Optional[Disassembler] = None):
        self.pe = pe
        self.logger = pe.logger
        self.disassembler = disassembler if disassembler is not None else Disassembler(pe.is_32bit)

    def get_method_body(self, virtual_address: int, peek: bool = False) -> List[Instruction]:
        """
        Disassemble a bounded window at a function, stopping at the int3 padding that follows it
        """
        offset = self.pe.map_virtual_address_to_raw(virtual_address)
        if offset is None:
            raise RecoveryAborted(f'Function at 0x{virtual_address:x} is not backed by the image')

        window = self.pe.raw[offset:offset + METHOD_BODY_WINDOW_SIZE]
        count = PEEK_INSTRUCTION_COUNT if peek else 0
        body = []

        for instruction in self.disassembler.disassemble(window, virtual_address, count):
            if instruction.is_breakpoint:
                break
            body.append(instruction)

        return body

    def find_init_export(self) -> int:
        try:
            address = self.pe.get_virtual_address_of_unmanaged_export_by_name(INIT_EXPORT_NAME)
        except MissingExportDirectoryError as e:
            raise RecoveryAborted(f'Cannot read exports - {e}')  # pylint: disable=W0707

        if address == 0:
            raise RecoveryAborted(f'Could not find exported {INIT_EXPORT_NAME} function')

        return address

    def disassemble_text_section(self) -> List[Instruction]:
        text_section = self.pe.get_text_section()
        if text_section is None:
            raise RecoveryAborted('Image has no executable section')

        instructions = self.disassembler.disassemble(self.pe.get_section_data(text_section),
                                                     self.pe.get_section_virtual_address(text_section),
                                                     skip_data=True)
        self.logger.info(f'disassembled {text_section.name} into {len(instructions)} instructions')

        return instructions

    def recover(self) -> Tuple[int, int]:
        """
        Run the whole chain. Returns (code registration, metadata registration) or raises RecoveryAborted.
        """
        try:
            init_address = self.find_init_export()
            self.logger.info(f'found {INIT_EXPORT_NAME} export at 0x{init_address:x}')

            runtime_init = find_runtime_init(self.get_method_body(init_address))
            self.logger.info(f'located probable Runtime::Init at 0x{runtime_init:x}')

            execute_initializations = find_execute_initializations(self.get_method_body(runtime_init))
            self.logger.info(f'located probable ExecuteInitializations at 0x{execute_initializations:x}')

            callback_list = find_callback_list(self.get_method_body(execute_initializations, peek=True))
            self.logger.info(f'global callback list is probably at 0x{callback_list:x}')

            instructions = self.disassemble_text_section()
            write_index = find_callback_list_write(instructions, callback_list)
            self.logger.info(f'single write to the callback list at 0x{instructions[write_index].address:x}')

            call_index = find_register_callback_call(instructions, write_index)
            self.logger.info(f'callback registration call at 0x{instructions[call_index].address:x}')

            codegen_registration = find_argument_load(instructions, call_index)
            self.logger.info(f's_Il2CppCodegenRegistration is at 0x{codegen_registration:x}')

            return find_registration_loads(self.get_method_body(codegen_registration))

        except Il2CppFormatError as e:
            raise RecoveryAborted(f'Image read failed during recovery - {e}')  # pylint: disable=W0707
