"""
il2cppfile - parser for native PE images produced by Unity's il2cpp toolchain.

The parser reads the container (DOS stub, NT headers, optional header, section table) through pefile, translates
between virtual addresses and file offsets and decodes fixed-layout records, pointer arrays and strings from the
raw image. It also resolves unmanaged exports by name from the export directory.

The following references were used:
    Microsoft PE/COFF specification
        https://learn.microsoft.com/en-us/windows/win32/debug/pe-format
    Cpp2IL
        https://github.com/SamboyCoding/Cpp2IL
    Il2CppDumper
        https://github.com/Perfare/Il2CppDumper
"""

from __future__ import annotations

import os
import logging
from struct import calcsize, unpack_from
from pefile import PE, PEFormatError, Structure, OPTIONAL_HEADER_MAGIC_PE, OPTIONAL_HEADER_MAGIC_PE_PLUS
from typing import List, Optional, Union
from pathlib import PurePath

from .util import Section, map_virtual_address_to_raw, read_null_terminated_byte_string, section_name_from_bytes
from .logger import get_logger
from .structures import StructureFormat, get_arch_format
from .constants import (IMAGE_FILE_MACHINE_I386, SUPPORTED_MACHINES, IMAGE_DIRECTORY_ENTRY_EXPORT,
                        EXECUTE_SECTION_CHARACTERISTICS, DATA_SECTION_CHARACTERISTICS, TEXT_SECTION_NAME)


PathLike = Union[str, bytes, os.PathLike, PurePath]


class Il2CppFormatError(Exception):
    def __init__(self, value):
        self.value = value

    def __str__(self):
        return repr(self.value)


class MalformedContainerError(Il2CppFormatError):
    pass


class UnsupportedArchitectureError(Il2CppFormatError):
    pass


class UnmappedAddressError(Il2CppFormatError):
    pass


class TruncatedReadError(Il2CppFormatError):
    pass


class MissingExportDirectoryError(Il2CppFormatError):
    pass


class Il2CppPEParser(PE):
    def __init__(self, file_ref: PathLike, log_level: int = logging.INFO, **kwargs):
        if isinstance(file_ref, (bytes, bytearray)):
            raw = bytes(file_ref)
        else:
            with open(file_ref, 'rb') as f:
                raw = f.read()

        # Data directories are parsed by hand where needed, pefile only has to read the headers
        kwargs.setdefault('fast_load', True)

        try:
            super().__init__(data=raw, **kwargs)
        except PEFormatError as e:
            raise MalformedContainerError(f'File is not a valid PE image - {e}')  # pylint: disable=W0707

        self.logger = get_logger('il2cpp_pe_logger', level=log_level)
        self.raw = raw

        machine = self.FILE_HEADER.Machine  # pylint: disable=E1101
        if machine not in SUPPORTED_MACHINES:
            raise UnsupportedArchitectureError(f'Unsupported machine type 0x{machine:x}')

        self.is_32bit = machine == IMAGE_FILE_MACHINE_I386
        expected_magic = OPTIONAL_HEADER_MAGIC_PE if self.is_32bit else OPTIONAL_HEADER_MAGIC_PE_PLUS
        if self.PE_TYPE != expected_magic:
            raise UnsupportedArchitectureError(
                f'Optional header magic 0x{self.PE_TYPE:x} does not match machine type 0x{machine:x}')

        self.image_base = self.OPTIONAL_HEADER.ImageBase  # pylint: disable=E1101
        self.pointer_size = 4 if self.is_32bit else 8
        self.image_sections = tuple(
            Section(name=section_name_from_bytes(section.Name),
                    virtual_address=section.VirtualAddress,
                    virtual_size=section.Misc_VirtualSize,
                    raw_pointer=section.PointerToRawData,
                    raw_size=section.SizeOfRawData,
                    characteristics=section.Characteristics)
            for section in self.sections)

        # Export table, loaded on first lookup
        self.export_function_pointers: Optional[List[int]] = None
        self.export_function_name_pointers: Optional[List[int]] = None
        self.export_function_ordinals: Optional[List[int]] = None

        self.logger.info(f'image base at 0x{self.image_base:x}, image is {SUPPORTED_MACHINES[machine]}, '
                         f'{len(self.image_sections)} sections')

    @property
    def pointer_format(self) -> str:
        return 'I' if self.is_32bit else 'Q'

    @property
    def signed_pointer_format(self) -> str:
        return 'i' if self.is_32bit else 'q'

    def map_virtual_address_to_raw(self, virtual_address: int) -> Optional[int]:
        return map_virtual_address_to_raw(self.image_sections, self.image_base, self.is_32bit, virtual_address)

    def get_offset_from_virtual_address(self, virtual_address: int) -> int:
        offset = self.map_virtual_address_to_raw(virtual_address)
        if offset is None:
            raise UnmappedAddressError(f'Virtual address 0x{virtual_address:x} is not backed by the image')

        return offset

    def get_section_virtual_address(self, section: Section) -> int:
        return self.image_base + section.virtual_address

    def get_section_data(self, section: Section) -> bytes:
        return self.raw[section.raw_pointer:section.raw_pointer + section.raw_size]

    def get_exec_sections(self) -> List[Section]:
        return [section for section in self.image_sections
                if section.characteristics in EXECUTE_SECTION_CHARACTERISTICS]

    def get_data_sections(self) -> List[Section]:
        return [section for section in self.image_sections
                if section.characteristics in DATA_SECTION_CHARACTERISTICS]

    def get_text_section(self) -> Optional[Section]:
        for section in self.image_sections:
            if section.name == TEXT_SECTION_NAME:
                return section

        exec_sections = self.get_exec_sections()
        return exec_sections[0] if exec_sections else None

    def _check_read_bounds(self, offset: int, size: int) -> None:
        if offset < 0 or offset + size > len(self.raw):
            raise TruncatedReadError(
                f'Read of 0x{size:x} bytes at offset 0x{offset:x} exceeds image size 0x{len(self.raw):x}')

    def read_values(self, value_type: str, offset: int, count: int) -> List[int]:
        """
        Read count consecutive little-endian values of the given struct type
        """
        if count <= 0:
            return []

        # Counts come from the image, check them before building a format out of them
        self._check_read_bounds(offset, count * calcsize('<' + value_type))

        return list(unpack_from(f'<{count}{value_type}', self.raw, offset))

    def read_values_at_virtual_address(self, value_type: str, virtual_address: int, count: int) -> List[int]:
        # Empty tables are usually stored as null pointers, don't try to map them
        if count <= 0:
            return []

        return self.read_values(value_type, self.get_offset_from_virtual_address(virtual_address), count)

    def read_structure(self, structure_format: StructureFormat, offset: int) -> Structure:
        structure = Structure(get_arch_format(structure_format, self.is_32bit), file_offset=offset)
        size = structure.sizeof()
        self._check_read_bounds(offset, size)
        structure.__unpack__(self.raw[offset:offset + size])

        return structure

    def read_structure_array(self, structure_format: StructureFormat, offset: int, count: int) -> List[Structure]:
        structures = []
        if count <= 0:
            return structures

        size = Structure(get_arch_format(structure_format, self.is_32bit)).sizeof()
        self._check_read_bounds(offset, count * size)

        for _ in range(count):
            structures.append(self.read_structure(structure_format, offset))
            offset += size

        return structures

    def read_structure_at_virtual_address(self, structure_format: StructureFormat, virtual_address: int) -> Structure:
        return self.read_structure(structure_format, self.get_offset_from_virtual_address(virtual_address))

    def read_structure_array_at_virtual_address(self, structure_format: StructureFormat, virtual_address: int,
                                                count: int) -> List[Structure]:
        if count <= 0:
            return []

        return self.read_structure_array(structure_format, self.get_offset_from_virtual_address(virtual_address),
                                         count)

    def get_pointers(self, virtual_address: int, count: int) -> List[int]:
        """
        Read an array of pointers, 4 bytes wide on PE32 and 8 bytes wide on PE32+
        """
        return self.read_values_at_virtual_address(self.pointer_format, virtual_address, count)

    def read_string_at_offset(self, offset: int) -> str:
        if offset < 0 or offset >= len(self.raw):
            raise TruncatedReadError(f'String offset 0x{offset:x} is outside of the image')

        return read_null_terminated_byte_string(self.raw, offset).decode('utf-8', errors='replace')

    def read_string_at_virtual_address(self, virtual_address: int) -> str:
        return self.read_string_at_offset(self.get_offset_from_virtual_address(virtual_address))

    def load_export_table(self) -> None:
        if self.export_function_pointers is not None:
            return

        data_directories = getattr(self.OPTIONAL_HEADER, 'DATA_DIRECTORY', None)
        if not data_directories:
            raise MissingExportDirectoryError('Optional header has no data directories')

        # The first data directory is the export table per platform convention
        export_directory_rva = data_directories[IMAGE_DIRECTORY_ENTRY_EXPORT].VirtualAddress
        if export_directory_rva == 0:
            raise MissingExportDirectoryError('Export data directory is empty')

        export_directory = self.read_structure_at_virtual_address(
            self.__IMAGE_EXPORT_DIRECTORY_format__, export_directory_rva + self.image_base)

        function_pointers = self.read_values_at_virtual_address(
            'I', export_directory.AddressOfFunctions + self.image_base, export_directory.NumberOfFunctions)
        name_pointers = self.read_values_at_virtual_address(
            'I', export_directory.AddressOfNames + self.image_base, export_directory.NumberOfNames)
        # The ordinal table has no count of its own, it is as long as the name table
        ordinals = self.read_values_at_virtual_address(
            'H', export_directory.AddressOfNameOrdinals + self.image_base, export_directory.NumberOfNames)

        self.export_function_pointers = function_pointers
        self.export_function_name_pointers = name_pointers
        self.export_function_ordinals = ordinals

        self.logger.debug(f'loaded export table with {len(function_pointers)} functions and '
                          f'{len(name_pointers)} names')

    def get_virtual_address_of_unmanaged_export_by_name(self, export_name: str) -> int:
        """
        Resolve an exported function by name. Returns 0 if the image does not export it.
        """
        self.load_export_table()

        for index, name_pointer in enumerate(self.export_function_name_pointers):
            name_offset = self.map_virtual_address_to_raw(name_pointer + self.image_base)
            if name_offset is None:
                continue

            if self.read_string_at_offset(name_offset) != export_name:
                continue

            ordinal = self.export_function_ordinals[index]
            if ordinal >= len(self.export_function_pointers):
                self.logger.debug(f'export {export_name} has out of range ordinal {ordinal}')
                return 0

            return self.export_function_pointers[ordinal] + self.image_base

        return 0
