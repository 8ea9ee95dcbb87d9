"""
Part of il2cppfile

Primary search for the code and metadata registration structures. The registrations are plain data, so they can
be found by their shape: counts that match the numbers from global-metadata.dat, next to pointers that land in
the expected sections.
"""

from struct import pack, unpack_from
from typing import Dict, Iterator, List, Optional, TYPE_CHECKING

from .util import Section
from .parser import Il2CppFormatError
from .structures import IL2CPP_METADATA_REGISTRATION_FORMAT, get_code_registration_format, get_field_offset
from .constants import CODE_GEN_MODULE_FEATURE_BYTES, MAX_CODE_GEN_MODULES, CODE_GEN_MODULES_METADATA_VERSION

if TYPE_CHECKING:
    from .parser import Il2CppPEParser


class PlusSearch:
    def __init__(self, pe: 'Il2CppPEParser', metadata_version: float, method_count: int,
                 type_definitions_count: int, image_count: int = 0):
        self.pe = pe
        self.logger = pe.logger
        self.metadata_version = metadata_version
        self.method_count = method_count
        self.type_definitions_count = type_definitions_count
        self.max_code_gen_modules = image_count if image_count > 0 else MAX_CODE_GEN_MODULES

        self.exec_sections: List[Section] = []
        self.data_sections: List[Section] = []
        self._pointer_index: Optional[Dict[int, List[int]]] = None

    def set_exec_sections(self, sections: List[Section]) -> None:
        self.exec_sections = sections

    def set_data_sections(self, sections: List[Section]) -> None:
        self.data_sections = sections
        self._pointer_index = None

    def _section_address(self, section: Section) -> int:
        return self.pe.get_section_virtual_address(section)

    def _is_in_sections(self, virtual_address: int, sections: List[Section]) -> bool:
        return any(self._section_address(section) <= virtual_address < self._section_address(section) +
                   section.virtual_size for section in sections)

    def _search_bytes(self, section: Section, needle: bytes, aligned: bool = False) -> Iterator[int]:
        """
        Yield section-relative offsets of needle, optionally only those aligned to the pointer size
        """
        data = self.pe.get_section_data(section)
        start = 0

        while True:
            index = data.find(needle, start)
            if index == -1:
                return
            if not aligned or index % self.pe.pointer_size == 0:
                yield index
            start = index + 1

    def _pack_pointer(self, value: int) -> bytes:
        return pack('<' + self.pe.pointer_format, value)

    def _read_section_pointer(self, section: Section, index: int) -> Optional[int]:
        data = self.pe.get_section_data(section)
        if index + self.pe.pointer_size > len(data):
            return None

        return unpack_from('<' + self.pe.pointer_format, data, index)[0]

    def _get_pointer_index(self) -> Dict[int, List[int]]:
        """
        Map every aligned non-zero pointer-sized value in the data sections to the addresses holding it
        """
        if self._pointer_index is None:
            self._pointer_index = {}
            size = self.pe.pointer_size

            for section in self.data_sections:
                data = self.pe.get_section_data(section)
                base = self._section_address(section)
                values = unpack_from(f'<{len(data) // size}{self.pe.pointer_format}', data)
                for slot, value in enumerate(values):
                    if value:
                        self._pointer_index.setdefault(value, []).append(base + slot * size)

        return self._pointer_index

    def find_references(self, virtual_address: int) -> List[int]:
        return self._get_pointer_index().get(virtual_address, [])

    def find_code_registration(self) -> int:
        if self.metadata_version >= CODE_GEN_MODULES_METADATA_VERSION:
            return self._find_code_registration_2019()

        return self._find_code_registration_old()

    def _find_code_registration_old(self) -> int:
        """
        methodPointersCount is the first field, followed by the method pointer table
        """
        if self.method_count <= 0:
            return 0

        size = self.pe.pointer_size

        for section in self.data_sections:
            for index in self._search_bytes(section, self._pack_pointer(self.method_count), aligned=True):
                pointer = self._read_section_pointer(section, index + size)
                if pointer is None or not self._is_in_sections(pointer, self.data_sections):
                    continue

                try:
                    method_pointers = self.pe.get_pointers(pointer, self.method_count)
                except Il2CppFormatError as e:
                    self.logger.debug(f'method pointer candidate at 0x{pointer:x} is unreadable - {e}')
                    continue

                if all(self._is_in_sections(method_pointer, self.exec_sections) for method_pointer in method_pointers):
                    return self._section_address(section) + index

        return 0

    def _find_code_registration_2019(self) -> int:
        """
        Follow "mscorlib.dll" to the code gen module naming it, to its slot in the codeGenModules array and back to
        the start of that array, which the code registration points to.
        """
        size = self.pe.pointer_size
        code_gen_modules_offset = get_field_offset(get_code_registration_format(self.metadata_version),
                                                   'codeGenModules', self.pe.is_32bit)

        for section in self.data_sections:
            for index in self._search_bytes(section, CODE_GEN_MODULE_FEATURE_BYTES):
                module_name = self._section_address(section) + index

                for code_gen_module in self.find_references(module_name):
                    for module_slot in self.find_references(code_gen_module):
                        for i in range(self.max_code_gen_modules):
                            references = self.find_references(module_slot - i * size)
                            if references:
                                return references[0] - code_gen_modules_offset

        return 0

    def find_metadata_registration(self) -> int:
        """
        fieldOffsetsCount and typeDefinitionsSizesCount both equal the type definition count and sandwich the
        fieldOffsets pointer
        """
        if self.type_definitions_count <= 0:
            return 0

        size = self.pe.pointer_size
        field_offsets_count_offset = get_field_offset(IL2CPP_METADATA_REGISTRATION_FORMAT, 'fieldOffsetsCount',
                                                      self.pe.is_32bit)

        for section in self.data_sections:
            for index in self._search_bytes(section, self._pack_pointer(self.type_definitions_count), aligned=True):
                pointer = self._read_section_pointer(section, index + size)
                second_count = self._read_section_pointer(section, index + 2 * size)

                if pointer is None or second_count != self.type_definitions_count:
                    continue

                if self._is_in_sections(pointer, self.data_sections):
                    return self._section_address(section) + index - field_offsets_count_offset

        return 0
