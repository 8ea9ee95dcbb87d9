"""
il2cppfile - Interface library for recovering il2cpp registration data from native PE images.

Unity's il2cpp toolchain compiles managed assemblies to native code and keeps two root structures in the image,
the code registration and the metadata registration. From them every method pointer, generic instantiation and
runtime type can be reached. They are not exported, so they are either supplied by the caller or recovered by
searching the image (see search.py and recovery.py).

The following references were used:
    Cpp2IL
        https://github.com/SamboyCoding/Cpp2IL
    Il2CppDumper
        https://github.com/Perfare/Il2CppDumper
    Unity il2cpp runtime headers (il2cpp-class-internals.h, il2cpp-runtime-metadata.h)
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Dict, Optional

from pefile import Structure

from .parser import Il2CppPEParser, Il2CppFormatError, PathLike
from .search import PlusSearch
from .recovery import RegistrationRecovery, RecoveryAborted
from .disassembler import Disassembler
from .structures import (IL2CPP_METADATA_REGISTRATION_FORMAT, IL2CPP_CODE_GEN_MODULE_FORMAT, IL2CPP_GENERIC_INST_FORMAT,
                         IL2CPP_TYPE_FORMAT, IL2CPP_METHOD_SPEC_FORMAT, get_code_registration_format,
                         get_generic_method_functions_definitions_format)
from .constants import (SUPPORTED_METADATA_VERSIONS, CODE_GEN_MODULES_METADATA_VERSION, TOKEN_ROW_MASK,
                        Il2CppTypeEnum)


class UnsupportedMetadataVersionError(Il2CppFormatError):
    pass


class RegistrationStateError(Exception):
    def __init__(self, value):
        self.value = value

    def __str__(self):
        return repr(self.value)


class Type:
    class MethodPointerLayout(Enum):
        # One flat methodPointers table in the code registration
        LEGACY = 'Legacy'
        # One method pointer table per code gen module
        MODERN = 'Modern'


class Struct:
    @dataclass
    class Il2CppType:
        address: int
        datapoint: int
        bits: int
        attrs: int = 0
        type: int = 0
        num_mods: int = 0
        byref: bool = False
        pinned: bool = False

        @classmethod
        def from_structure(cls, address: int, structure: Structure) -> 'Struct.Il2CppType':
            il2cpp_type = cls(address, structure.datapoint, structure.bits)
            il2cpp_type.init()
            return il2cpp_type

        def init(self) -> None:
            """
            Unpack the bitfield that follows the data union
            """
            self.attrs = self.bits & 0xFFFF
            type_value = (self.bits >> 16) & 0xFF
            try:
                self.type = Il2CppTypeEnum(type_value)
            except ValueError:
                self.type = type_value
            self.num_mods = (self.bits >> 24) & 0x3F
            self.byref = bool((self.bits >> 30) & 1)
            self.pinned = bool((self.bits >> 31) & 1)

        @property
        def klass_index(self) -> int:
            return self.datapoint

    @dataclass
    class CodeGenModule:
        address: int
        name: str
        method_pointer_count: int
        method_pointers_address: int

    @dataclass
    class RegistrationGraph:
        code_registration: Structure
        metadata_registration: Structure
        method_pointers: List[int] = field(default_factory=list)
        code_gen_modules: List['Struct.CodeGenModule'] = field(default_factory=list)
        code_gen_module_method_pointers: List[List[int]] = field(default_factory=list)
        generic_method_pointers: List[int] = field(default_factory=list)
        invoker_pointers: List[int] = field(default_factory=list)
        custom_attribute_generators: List[int] = field(default_factory=list)
        field_offsets: List[int] = field(default_factory=list)
        types: List['Struct.Il2CppType'] = field(default_factory=list)
        type_index_by_address: Dict[int, int] = field(default_factory=dict)
        metadata_usages: List[int] = field(default_factory=list)
        generic_insts: List[Structure] = field(default_factory=list)
        generic_method_tables: List[Structure] = field(default_factory=list)
        method_specs: List[Structure] = field(default_factory=list)
        generic_method_index: Dict[int, int] = field(default_factory=dict)


class Il2CppPE(Il2CppPEParser):
    def __init__(self, file_ref: PathLike, metadata_version: float, max_metadata_usages: int = 0,
                 log_level: int = logging.INFO, **kwargs):
        if metadata_version not in SUPPORTED_METADATA_VERSIONS:
            raise UnsupportedMetadataVersionError(f'Unsupported metadata version {metadata_version}')

        super().__init__(file_ref, log_level=log_level, **kwargs)

        self.metadata_version = metadata_version
        self.max_metadata_usages = max_metadata_usages
        self.registration: Optional[Struct.RegistrationGraph] = None

    @property
    def method_pointer_layout(self) -> Type.MethodPointerLayout:
        if self.metadata_version >= CODE_GEN_MODULES_METADATA_VERSION:
            return Type.MethodPointerLayout.MODERN

        return Type.MethodPointerLayout.LEGACY

    @property
    def is_loaded(self) -> bool:
        return self.registration is not None

    def _get_registration(self) -> Struct.RegistrationGraph:
        if self.registration is None:
            raise RegistrationStateError('Registrations have not been loaded')

        return self.registration

    def auto_init(self, code_registration: int, metadata_registration: int) -> bool:
        self.logger.info(f'code registration: 0x{code_registration:x}')
        self.logger.info(f'metadata registration: 0x{metadata_registration:x}')

        if code_registration == 0 or metadata_registration == 0:
            return False

        self.load_registrations(code_registration, metadata_registration)
        return True

    def load_registrations(self, code_registration_address: int,
                           metadata_registration_address: int) -> Struct.RegistrationGraph:
        """
        Walk everything reachable from the two registration roots. Loading happens once per image, a second call
        raises RegistrationStateError.
        """
        if self.registration is not None:
            raise RegistrationStateError('Registrations are already loaded')

        self.logger.info('initializing il2cpp registration data')
        code_registration = self.read_structure_at_virtual_address(
            get_code_registration_format(self.metadata_version), code_registration_address)
        metadata_registration = self.read_structure_at_virtual_address(
            IL2CPP_METADATA_REGISTRATION_FORMAT, metadata_registration_address)
        graph = Struct.RegistrationGraph(code_registration, metadata_registration)

        self.logger.debug('reading generic instances')
        graph.generic_insts = [
            self.read_structure_at_virtual_address(IL2CPP_GENERIC_INST_FORMAT, pointer)
            for pointer in self.get_pointers(metadata_registration.genericInsts,
                                             metadata_registration.genericInstsCount)]

        self.logger.debug('reading generic method pointers')
        graph.generic_method_pointers = self.get_pointers(code_registration.genericMethodPointers,
                                                          code_registration.genericMethodPointersCount)

        self.logger.debug('reading invoker pointers')
        graph.invoker_pointers = self.get_pointers(code_registration.invokerPointers,
                                                   code_registration.invokerPointersCount)

        self.logger.debug('reading custom attribute generators')
        graph.custom_attribute_generators = self.get_pointers(code_registration.customAttributeGenerators,
                                                              code_registration.customAttributeCount)

        self.logger.debug('reading field offsets')
        graph.field_offsets = self.read_values_at_virtual_address(self.signed_pointer_format,
                                                                  metadata_registration.fieldOffsets,
                                                                  metadata_registration.fieldOffsetsCount)

        self.logger.debug('reading types')
        for type_address in self.get_pointers(metadata_registration.types, metadata_registration.typesCount):
            structure = self.read_structure_at_virtual_address(IL2CPP_TYPE_FORMAT, type_address)
            graph.type_index_by_address.setdefault(type_address, len(graph.types))
            graph.types.append(Struct.Il2CppType.from_structure(type_address, structure))

        self.logger.debug('reading metadata usages')
        graph.metadata_usages = self.get_pointers(metadata_registration.metadataUsages, self.max_metadata_usages)

        if self.method_pointer_layout == Type.MethodPointerLayout.MODERN:
            self._load_code_gen_modules(graph)
        else:
            self.logger.debug('reading method pointers')
            graph.method_pointers = self.get_pointers(code_registration.methodPointers,
                                                      code_registration.methodPointersCount)

        self.logger.debug('reading generic method tables')
        graph.generic_method_tables = self.read_structure_array_at_virtual_address(
            get_generic_method_functions_definitions_format(self.metadata_version),
            metadata_registration.genericMethodTable, metadata_registration.genericMethodTableCount)

        self.logger.debug('reading method specifications')
        graph.method_specs = self.read_structure_array_at_virtual_address(
            IL2CPP_METHOD_SPEC_FORMAT, metadata_registration.methodSpecs, metadata_registration.methodSpecsCount)

        self.logger.debug('building generic method index')
        for table in graph.generic_method_tables:
            if not 0 <= table.genericMethodIndex < len(graph.method_specs):
                raise Il2CppFormatError(f'Generic method table entry at 0x{table.get_file_offset():x} references '
                                        f'method spec {table.genericMethodIndex} of {len(graph.method_specs)}')
            if not 0 <= table.methodIndex < len(graph.generic_method_pointers):
                raise Il2CppFormatError(f'Generic method table entry at 0x{table.get_file_offset():x} references '
                                        f'generic method pointer {table.methodIndex} of '
                                        f'{len(graph.generic_method_pointers)}')

            method_definition_index = graph.method_specs[table.genericMethodIndex].methodDefinitionIndex
            if method_definition_index not in graph.generic_method_index:
                graph.generic_method_index[method_definition_index] = \
                    graph.generic_method_pointers[table.methodIndex]

        self.registration = graph
        self.logger.info(f'loaded {len(graph.types)} types, {len(graph.generic_method_index)} generic methods')

        return graph

    def _load_code_gen_modules(self, graph: Struct.RegistrationGraph) -> None:
        code_registration = graph.code_registration
        module_pointers = self.get_pointers(code_registration.codeGenModules, code_registration.codeGenModulesCount)

        self.logger.debug(f'reading {len(module_pointers)} code gen modules')
        for module_pointer in module_pointers:
            structure = self.read_structure_at_virtual_address(IL2CPP_CODE_GEN_MODULE_FORMAT, module_pointer)
            module = Struct.CodeGenModule(module_pointer, self.read_string_at_virtual_address(structure.moduleName),
                                          structure.methodPointerCount, structure.methodPointers)
            graph.code_gen_modules.append(module)

            self.logger.debug(f'module {module.name} has {module.method_pointer_count} method pointers starting '
                              f'at 0x{module.method_pointers_address:x}')

            try:
                method_pointers = self.get_pointers(module.method_pointers_address, module.method_pointer_count)
            except Il2CppFormatError as e:
                self.logger.warning(f'unable to get method pointers for {module.name}: {e}')
                # A table can't hold more pointers than the image has room for
                method_pointers = [0] * max(min(module.method_pointer_count, len(self.raw) // self.pointer_size), 0)

            graph.code_gen_module_method_pointers.append(method_pointers)

    def find_registrations(self, method_count: int, type_definitions_count: int, image_count: int = 0,
                           disassembler: Optional[Disassembler] = None) -> bool:
        """
        Locate and load the registrations, first by searching data sections for their shape and, if that fails,
        by following the initialization code from il2cpp_init.

        :param method_count: number of method definitions in global-metadata.dat
        :param type_definitions_count: number of type definitions in global-metadata.dat
        :param image_count: number of images (assemblies) in global-metadata.dat, 0 if unknown
        :param disassembler: disassembler used by the fallback, a capstone one by default
        """
        self.logger.info('looking for registration functions')

        exec_sections = self.get_exec_sections()
        data_sections = self.get_data_sections()
        for section in exec_sections:
            self.logger.debug(f'identified execute section {section.name}')
        for section in data_sections:
            self.logger.debug(f'identified data section {section.name}')

        plus_search = PlusSearch(self, self.metadata_version, method_count, type_definitions_count, image_count)
        plus_search.set_exec_sections(exec_sections)
        plus_search.set_data_sections(data_sections)

        code_registration = plus_search.find_code_registration()
        metadata_registration = plus_search.find_metadata_registration()

        if code_registration == 0 or metadata_registration == 0:
            self.logger.info('primary search failed, trying the il2cpp_init fallback')
            try:
                code_registration, metadata_registration = RegistrationRecovery(self, disassembler).recover()
            except RecoveryAborted as e:
                self.logger.info(f'fallback failed - {e.value}')
                code_registration = metadata_registration = 0

        return self.auto_init(code_registration, metadata_registration)

    def get_il2cpp_type(self, pointer: int) -> Struct.Il2CppType:
        graph = self._get_registration()
        return graph.types[graph.type_index_by_address[pointer]]

    def get_field_offset_from_index(self, type_index: int, field_index_in_type: int) -> int:
        """
        Offset of a field inside its type. -1 means the offset is not stored in the image, 0 that the type
        needs none.
        """
        field_offsets = self._get_registration().field_offsets
        if not 0 <= type_index < len(field_offsets):
            return -1

        pointer = field_offsets[type_index]

        if pointer < 0:
            return -1
        if pointer == 0:
            return 0

        offset = self.map_virtual_address_to_raw(pointer)
        if offset is None:
            return -1

        position = offset + 4 * field_index_in_type
        if field_index_in_type < 0 or position > len(self.raw) - 4:
            return -1

        return self.read_values('i', position, 1)[0]

    def get_method_pointer(self, method_index: int, method_definition_index: int, image_index: int,
                           method_token: int) -> int:
        """
        Native address of a managed method, 0 if the image has none
        """
        graph = self._get_registration()

        if self.method_pointer_layout == Type.MethodPointerLayout.MODERN:
            if method_definition_index in graph.generic_method_index:
                return graph.generic_method_index[method_definition_index]

            if not 0 <= image_index < len(graph.code_gen_module_method_pointers):
                return 0

            method_pointers = graph.code_gen_module_method_pointers[image_index]
            method_pointer_index = (method_token & TOKEN_ROW_MASK) - 1
            if 0 <= method_pointer_index < len(method_pointers):
                return method_pointers[method_pointer_index]

            return 0

        if method_index >= 0:
            return graph.method_pointers[method_index] if method_index < len(graph.method_pointers) else 0

        return graph.generic_method_index.get(method_definition_index, 0)
