"""
Part of il2cppfile

Record layouts of the il2cpp registration structures, written as pefile format tuples so they can be decoded
with pefile.Structure. Two placeholder field types are used for values whose width follows the architecture:
'P' for an unsigned pointer-sized value and 'p' for a signed pointer-sized value. They are replaced with the
concrete struct format characters by get_arch_format() before a record is decoded.

References:
    il2cpp-class-internals.h and il2cpp-metadata.h of the Unity il2cpp runtime
    Il2CppDumper (https://github.com/Perfare/Il2CppDumper)
"""

from functools import lru_cache
from struct import calcsize
from typing import Tuple

from .constants import CODE_GEN_MODULES_METADATA_VERSION


StructureFormat = Tuple[str, Tuple[str, ...]]

POINTER_PLACEHOLDERS = {
    # placeholder: (32-bit, 64-bit)
    'P': ('I', 'Q'),
    'p': ('i', 'q')
}


IL2CPP_METADATA_REGISTRATION_FORMAT = ('IL2CPP_METADATA_REGISTRATION', (
    'p,genericClassesCount',
    'P,genericClasses',
    'p,genericInstsCount',
    'P,genericInsts',
    'p,genericMethodTableCount',
    'P,genericMethodTable',
    'p,typesCount',
    'P,types',
    'p,methodSpecsCount',
    'P,methodSpecs',
    'p,fieldOffsetsCount',
    'P,fieldOffsets',
    'p,typeDefinitionsSizesCount',
    'P,typeDefinitionsSizes',
    'P,metadataUsagesCount',
    'P,metadataUsages'))

IL2CPP_CODE_GEN_MODULE_FORMAT = ('IL2CPP_CODE_GEN_MODULE', (
    'P,moduleName',
    'p,methodPointerCount',
    'P,methodPointers',
    'P,invokerIndices',
    'P,reversePInvokeWrapperCount',
    'P,reversePInvokeWrapperIndices',
    'P,rgctxRangesCount',
    'P,rgctxRanges',
    'P,rgctxsCount',
    'P,rgctxs',
    'P,debuggerMetadata'))

IL2CPP_GENERIC_INST_FORMAT = ('IL2CPP_GENERIC_INST', (
    'p,type_argc',
    'P,type_argv'))

IL2CPP_TYPE_FORMAT = ('IL2CPP_TYPE', (
    'P,datapoint',
    'I,bits'))

IL2CPP_METHOD_SPEC_FORMAT = ('IL2CPP_METHOD_SPEC', (
    'i,methodDefinitionIndex',
    'i,classIndexIndex',
    'i,methodIndexIndex'))


def get_code_registration_format(metadata_version: float) -> StructureFormat:
    fields = []

    if metadata_version < CODE_GEN_MODULES_METADATA_VERSION:
        fields += ['P,methodPointersCount', 'P,methodPointers']

    fields += ['P,reversePInvokeWrapperCount', 'P,reversePInvokeWrappers',
               'P,genericMethodPointersCount', 'P,genericMethodPointers']

    if metadata_version >= 24.5:
        fields.append('P,genericAdjustorThunks')

    fields += ['P,invokerPointersCount', 'P,invokerPointers',
               'p,customAttributeCount', 'P,customAttributeGenerators',
               'P,unresolvedVirtualCallCount', 'P,unresolvedVirtualCallPointers',
               'P,interopDataCount', 'P,interopData']

    if metadata_version >= 24.3:
        fields += ['P,windowsRuntimeFactoryCount', 'P,windowsRuntimeFactoryTable']

    if metadata_version >= CODE_GEN_MODULES_METADATA_VERSION:
        fields += ['P,codeGenModulesCount', 'P,codeGenModules']

    return 'IL2CPP_CODE_REGISTRATION', tuple(fields)


def get_generic_method_functions_definitions_format(metadata_version: float) -> StructureFormat:
    fields = ['i,genericMethodIndex', 'i,methodIndex', 'i,invokerIndex']

    if metadata_version >= 24.5:
        fields.append('i,adjustorThunkIndex')

    return 'IL2CPP_GENERIC_METHOD_FUNCTIONS_DEFINITIONS', tuple(fields)


@lru_cache(maxsize=None)
def get_arch_format(structure_format: StructureFormat, is_32bit: bool) -> StructureFormat:
    """
    Replace the pointer placeholders of a format with the architecture's concrete field types
    """
    name, fields = structure_format
    arch_fields = []

    for field in fields:
        field_type, field_name = field.split(',', 1)
        if field_type in POINTER_PLACEHOLDERS:
            field_type = POINTER_PLACEHOLDERS[field_type][0 if is_32bit else 1]
        arch_fields.append(f'{field_type},{field_name}')

    return name, tuple(arch_fields)


def get_field_offset(structure_format: StructureFormat, field_name: str, is_32bit: bool) -> int:
    """
    Byte offset of a field inside a record. Registration records are made of pointer-sized fields only,
    so no alignment padding has to be accounted for.
    """
    _, fields = get_arch_format(structure_format, is_32bit)
    field_types = ''

    for field in fields:
        field_type, name = field.split(',', 1)
        if name == field_name:
            return calcsize('<' + field_types)
        field_types += field_type

    raise KeyError(f'{structure_format[0]} has no field {field_name}')
