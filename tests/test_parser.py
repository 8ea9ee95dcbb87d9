import pytest
from il2cppfile.parser import (
    Il2CppPEParser,
    MalformedContainerError,
    UnsupportedArchitectureError,
    UnmappedAddressError,
    TruncatedReadError,
    MissingExportDirectoryError
)
from il2cppfile.constants import IMAGE_FILE_MACHINE_I386, IMAGE_FILE_MACHINE_AMD64, IMAGE_DIRECTORY_ENTRY_EXPORT
from pe_test_utils import (PEBuilder, EXECUTE_CHARACTERISTICS, READ_ONLY_DATA_CHARACTERISTICS,
                           DATA_CHARACTERISTICS)


def test_bad_dos_magic(pe_builder):
    pe_builder.dos_magic = b'XX'
    with pytest.raises(MalformedContainerError):
        Il2CppPEParser(pe_builder.build())


def test_bad_nt_signature(pe_builder):
    pe_builder.nt_signature = b'NE\x00\x00'
    with pytest.raises(MalformedContainerError):
        Il2CppPEParser(pe_builder.build())


def test_truncated_container():
    with pytest.raises(MalformedContainerError):
        Il2CppPEParser(b'MZ' + b'\x00' * 10)


def test_unsupported_machine():
    builder = PEBuilder(machine=0xAA64)
    builder.add_default_sections()
    with pytest.raises(UnsupportedArchitectureError):
        Il2CppPEParser(builder.build())


def test_machine_and_optional_header_mismatch():
    builder = PEBuilder(is_32bit=False, machine=0x14C)
    builder.add_default_sections()
    with pytest.raises(UnsupportedArchitectureError):
        Il2CppPEParser(builder.build())


@pytest.mark.parametrize('is_32bit', [False, True])
def test_section_table_round_trip(is_32bit):
    builder = PEBuilder(is_32bit=is_32bit)
    expected = [
        (b'.text', 0x1000, 0x1800, EXECUTE_CHARACTERISTICS),
        (b'.rdata', 0x3000, 0x400, READ_ONLY_DATA_CHARACTERISTICS),
        (b'.data', 0x4000, 0x200, DATA_CHARACTERISTICS),
        (b'.il2cpp', 0x5000, 0x600, EXECUTE_CHARACTERISTICS),
        (b'.reloc', 0x6000, 0x200, 0x42000040),
    ]
    for name, rva, size, characteristics in expected:
        builder.add_section(name, rva, size, characteristics)

    pe = Il2CppPEParser(builder.build())

    assert pe.is_32bit == is_32bit
    assert pe.pointer_size == (4 if is_32bit else 8)
    assert pe.image_base == builder.image_base
    assert [(s.name, s.virtual_address, s.virtual_size, s.characteristics) for s in pe.image_sections] == \
        [(name.decode(), rva, size, characteristics) for name, rva, size, characteristics in expected]


def test_section_classification():
    builder = PEBuilder()
    builder.add_default_sections()
    builder.add_section(b'.reloc', 0x5000, 0x200, 0x42000040)
    pe = Il2CppPEParser(builder.build())

    assert [s.name for s in pe.get_exec_sections()] == ['.text']
    assert [s.name for s in pe.get_data_sections()] == ['.rdata', '.data']
    assert pe.get_text_section().name == '.text'


def test_text_section_falls_back_to_first_exec_section():
    builder = PEBuilder()
    builder.add_section(b'.code', 0x1000, 0x200, EXECUTE_CHARACTERISTICS)
    pe = Il2CppPEParser(builder.build())

    assert pe.get_text_section().name == '.code'


def test_read_at_virtual_address(pe_builder):
    data = pe_builder.section_va(b'.data')
    pe_builder.write_pointers(data, [0x1122334455667788, 0x10])
    pe_builder.write_values(data + 0x10, 'i', [-5])
    pe_builder.write_string(data + 0x20, 'GameAssembly')
    pe = Il2CppPEParser(pe_builder.build())

    assert pe.get_pointers(data, 2) == [0x1122334455667788, 0x10]
    assert pe.read_values_at_virtual_address('i', data + 0x10, 1) == [-5]
    assert pe.read_string_at_virtual_address(data + 0x20) == 'GameAssembly'
    assert pe.get_offset_from_virtual_address(data) == pe.get_data_sections()[1].raw_pointer


def test_32bit_pointers_are_four_bytes():
    builder = PEBuilder(is_32bit=True)
    builder.add_default_sections()
    data = builder.section_va(b'.data')
    builder.write_values(data, 'I', [0x10001000, 0x10001010, 0x10001020])
    pe = Il2CppPEParser(builder.build())

    assert pe.get_pointers(data, 3) == [0x10001000, 0x10001010, 0x10001020]


def test_unmapped_read_raises(pe_builder):
    pe = Il2CppPEParser(pe_builder.build())

    with pytest.raises(UnmappedAddressError):
        pe.get_pointers(pe_builder.va(0x900000), 1)
    with pytest.raises(UnmappedAddressError):
        pe.read_string_at_virtual_address(pe_builder.image_base - 0x1000)


def test_empty_read_does_not_translate(pe_builder):
    pe = Il2CppPEParser(pe_builder.build())

    assert pe.get_pointers(0, 0) == []
    assert pe.read_structure_array_at_virtual_address(('EMPTY', ('I,value',)), 0, 0) == []


def test_read_past_end_raises(pe_builder):
    pe = Il2CppPEParser(pe_builder.build())
    last_pointer = pe_builder.section_va(b'.data') + 0x2000 - 8

    assert pe.get_pointers(last_pointer, 1) == [0]
    with pytest.raises(TruncatedReadError):
        pe.get_pointers(last_pointer, 2)


def test_read_structure_array(pe_builder):
    data = pe_builder.section_va(b'.data')
    pe_builder.write_values(data, 'i', [1, 2, 3, 4])
    pe = Il2CppPEParser(pe_builder.build())

    records = pe.read_structure_array_at_virtual_address(('PAIR', ('i,first', 'i,second')), data, 2)

    assert [(r.first, r.second) for r in records] == [(1, 2), (3, 4)]


def test_missing_export_directory(pe_builder):
    pe = Il2CppPEParser(pe_builder.build())

    with pytest.raises(MissingExportDirectoryError):
        pe.get_virtual_address_of_unmanaged_export_by_name('il2cpp_init')


def test_no_data_directories():
    builder = PEBuilder(number_of_data_directories=0)
    builder.add_default_sections()
    pe = Il2CppPEParser(builder.build())

    with pytest.raises(MissingExportDirectoryError):
        pe.load_export_table()


def test_oversized_count_raises_truncated_read(pe_builder):
    pe = Il2CppPEParser(pe_builder.build())
    data = pe_builder.section_va(b'.data')

    with pytest.raises(TruncatedReadError):
        pe.get_pointers(data, 0x7FFFFFFFFFFFFFFF)
    with pytest.raises(TruncatedReadError):
        pe.read_values_at_virtual_address('i', data, 0xFFFFFFFF)
    with pytest.raises(TruncatedReadError):
        pe.read_structure_array_at_virtual_address(('PAIR', ('i,first', 'i,second')), data, 0x7FFFFFFFFFFFFFFF)


def test_constants_match_pefile():
    assert IMAGE_FILE_MACHINE_I386 == 0x14C
    assert IMAGE_FILE_MACHINE_AMD64 == 0x8664
    assert IMAGE_DIRECTORY_ENTRY_EXPORT == 0
