"""
Part of il2cppfile

Address arithmetic and small byte helpers that do not need a parsed image.
"""

from dataclasses import dataclass
from typing import Optional, Sequence

from .constants import ADDRESS_MASK_32, ADDRESS_MASK_64


@dataclass(frozen=True)
class Section:
    name: str
    virtual_address: int
    virtual_size: int
    raw_pointer: int
    raw_size: int
    characteristics: int

    @property
    def virtual_end(self) -> int:
        return self.virtual_address + self.virtual_size

    def contains_rva(self, rva: int) -> bool:
        return self.virtual_address <= rva < self.virtual_end


def narrow_address(address: int, is_32bit: bool) -> Optional[int]:
    """
    Return the address if it fits the native width of the architecture, otherwise None
    """
    mask = ADDRESS_MASK_32 if is_32bit else ADDRESS_MASK_64

    if address < 0 or address > mask:
        return None

    return address


def map_virtual_address_to_raw(sections: Sequence[Section], image_base: int, is_32bit: bool,
                               virtual_address: int) -> Optional[int]:
    """
    Translate a virtual address into a file offset. None means the address is not backed by the file, which
    is an ordinary answer for anything outside the loaded image and not an error.

    :param sections: section table in on-disk order
    :param image_base: preferred load address of the image
    :param is_32bit: whether the image is PE32
    :param virtual_address: absolute virtual address
    """
    rva = narrow_address(virtual_address - image_base, is_32bit)
    if rva is None or not sections:
        return None

    if rva >= sections[-1].virtual_end:
        return None

    # First match in table order wins, well-formed images don't have overlapping sections
    for section in sections:
        if section.contains_rva(rva):
            return rva - (section.virtual_address - section.raw_pointer)

    return None


def read_null_terminated_byte_string(data: bytes, offset: int = 0) -> bytes:
    end = data.find(b'\x00', offset)
    if end == -1:
        end = len(data)

    return bytes(data[offset:end])


def section_name_from_bytes(name: bytes) -> str:
    return name.rstrip(b'\x00').decode('utf-8', errors='replace')
