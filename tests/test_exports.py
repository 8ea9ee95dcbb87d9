import pytest
from il2cppfile.parser import Il2CppPEParser, TruncatedReadError
from pe_test_utils import PEBuilder, READ_ONLY_DATA_CHARACTERISTICS


def test_resolve_il2cpp_init():
    builder = PEBuilder(image_base=0x10000000, number_of_data_directories=1)
    builder.add_section(b'.rdata', 0x1000, 0x200, READ_ONLY_DATA_CHARACTERISTICS)
    builder.add_exports(b'.rdata', [('il2cpp_init', 0x2000)])
    pe = Il2CppPEParser(builder.build())

    assert pe.get_virtual_address_of_unmanaged_export_by_name('il2cpp_init') == 0x10002000


def test_resolve_among_several_exports(pe_builder):
    pe_builder.add_exports(b'.rdata', [('il2cpp_alloc', 0x1100), ('il2cpp_init', 0x1200),
                                       ('il2cpp_shutdown', 0x1300)])
    pe = Il2CppPEParser(pe_builder.build())

    assert pe.get_virtual_address_of_unmanaged_export_by_name('il2cpp_init') == pe_builder.va(0x1200)
    assert pe.get_virtual_address_of_unmanaged_export_by_name('il2cpp_shutdown') == pe_builder.va(0x1300)


def test_unknown_export_returns_zero(pe_builder):
    pe_builder.add_exports(b'.rdata', [('il2cpp_alloc', 0x1100)])
    pe = Il2CppPEParser(pe_builder.build())

    assert pe.get_virtual_address_of_unmanaged_export_by_name('il2cpp_init') == 0
    assert pe.get_virtual_address_of_unmanaged_export_by_name('il2cpp_') == 0


def test_export_table_is_loaded_once(pe_builder, monkeypatch):
    pe_builder.add_exports(b'.rdata', [('il2cpp_init', 0x1000)])
    pe = Il2CppPEParser(pe_builder.build())

    pe.load_export_table()
    function_pointers = pe.export_function_pointers

    def fail(*args, **kwargs):
        pytest.fail('export directory read twice')

    monkeypatch.setattr(pe, 'read_structure_at_virtual_address', fail)
    assert pe.get_virtual_address_of_unmanaged_export_by_name('il2cpp_init') == pe_builder.va(0x1000)
    assert pe.export_function_pointers is function_pointers


def test_ordinal_table_is_sized_by_name_count(pe_builder):
    pe_builder.add_exports(b'.rdata', [('a', 0x1000), ('b', 0x1010), ('c', 0x1020)])
    pe = Il2CppPEParser(pe_builder.build())
    pe.load_export_table()

    assert pe.export_function_ordinals == [0, 1, 2]
    assert len(pe.export_function_name_pointers) == 3


def test_oversized_name_count(pe_builder):
    directory = pe_builder.add_exports(b'.rdata', [('il2cpp_init', 0x1000)])
    # NumberOfNames
    pe_builder.write_values(directory + 24, 'I', [0xFFFFFFFF])
    pe = Il2CppPEParser(pe_builder.build())

    with pytest.raises(TruncatedReadError):
        pe.get_virtual_address_of_unmanaged_export_by_name('il2cpp_init')
    assert pe.export_function_pointers is None
