'''
Part of il2cppfile

Constants shared by the image parser, the registration loader and the registration recovery.
'''

# flake8: noqa

from enum import IntEnum

from pefile import MACHINE_TYPE, DIRECTORY_ENTRY


# Machine types of the file header, the only two architectures the loader understands
IMAGE_FILE_MACHINE_I386 = MACHINE_TYPE['IMAGE_FILE_MACHINE_I386']
IMAGE_FILE_MACHINE_AMD64 = MACHINE_TYPE['IMAGE_FILE_MACHINE_AMD64']

SUPPORTED_MACHINES = {
    IMAGE_FILE_MACHINE_I386:  '32-bit',
    IMAGE_FILE_MACHINE_AMD64: '64-bit'
}

# Data directory index of the export table (first entry by platform convention)
IMAGE_DIRECTORY_ENTRY_EXPORT = DIRECTORY_ENTRY['IMAGE_DIRECTORY_ENTRY_EXPORT']

# Section characteristics as emitted by the MSVC linker for il2cpp game assemblies
EXECUTE_SECTION_CHARACTERISTICS = {
    0x60000020      # IMAGE_SCN_CNT_CODE | IMAGE_SCN_MEM_EXECUTE | IMAGE_SCN_MEM_READ
}
DATA_SECTION_CHARACTERISTICS = {
    0x40000040,     # IMAGE_SCN_CNT_INITIALIZED_DATA | IMAGE_SCN_MEM_READ
    0xC0000040      # IMAGE_SCN_CNT_INITIALIZED_DATA | IMAGE_SCN_MEM_READ | IMAGE_SCN_MEM_WRITE
}

TEXT_SECTION_NAME = '.text'

ADDRESS_MASK_32 = 0xFFFFFFFF
ADDRESS_MASK_64 = 0xFFFFFFFFFFFFFFFF

# Global-metadata versions whose registration layouts are known
SUPPORTED_METADATA_VERSIONS = (24.0, 24.1, 24.2, 24.3, 24.4, 24.5)
# First version that splits method pointers into per-module tables
CODE_GEN_MODULES_METADATA_VERSION = 24.2

# Low 24 bits of a metadata token hold the row index, the top byte is the table tag
TOKEN_ROW_MASK = 0x00FFFFFF

# Registration recovery
INIT_EXPORT_NAME = 'il2cpp_init'
METHOD_BODY_WINDOW_SIZE = 0x400
PEEK_INSTRUCTION_COUNT = 2
EXECUTE_INITIALIZATIONS_CALL_NUMBER = 3
CALLBACK_ARGUMENT_REGISTER = 'rdx'
METADATA_REGISTRATION_REGISTER = 'rdx'
CODE_REGISTRATION_REGISTER = 'rcx'
PROGRAM_COUNTER_REGISTERS = {'rip', 'eip'}
PARALLEL_FILTER_CHUNK_SIZE = 0x4000

# Primary registration search
CODE_GEN_MODULE_FEATURE_BYTES = b'mscorlib.dll\x00'
MAX_CODE_GEN_MODULES = 0x400


class Il2CppTypeEnum(IntEnum):
    """
    Sources:
    il2cpp-blob.h of the Unity il2cpp runtime (Il2CppTypeEnum)
    """
    IL2CPP_TYPE_END = 0x00
    IL2CPP_TYPE_VOID = 0x01
    IL2CPP_TYPE_BOOLEAN = 0x02
    IL2CPP_TYPE_CHAR = 0x03
    IL2CPP_TYPE_I1 = 0x04
    IL2CPP_TYPE_U1 = 0x05
    IL2CPP_TYPE_I2 = 0x06
    IL2CPP_TYPE_U2 = 0x07
    IL2CPP_TYPE_I4 = 0x08
    IL2CPP_TYPE_U4 = 0x09
    IL2CPP_TYPE_I8 = 0x0A
    IL2CPP_TYPE_U8 = 0x0B
    IL2CPP_TYPE_R4 = 0x0C
    IL2CPP_TYPE_R8 = 0x0D
    IL2CPP_TYPE_STRING = 0x0E
    IL2CPP_TYPE_PTR = 0x0F
    IL2CPP_TYPE_BYREF = 0x10
    IL2CPP_TYPE_VALUETYPE = 0x11
    IL2CPP_TYPE_CLASS = 0x12
    IL2CPP_TYPE_VAR = 0x13
    IL2CPP_TYPE_ARRAY = 0x14
    IL2CPP_TYPE_GENERICINST = 0x15
    IL2CPP_TYPE_TYPEDBYREF = 0x16
    IL2CPP_TYPE_I = 0x18
    IL2CPP_TYPE_U = 0x19
    IL2CPP_TYPE_FNPTR = 0x1B
    IL2CPP_TYPE_OBJECT = 0x1C
    IL2CPP_TYPE_SZARRAY = 0x1D
    IL2CPP_TYPE_MVAR = 0x1E
    IL2CPP_TYPE_CMOD_REQD = 0x1F
    IL2CPP_TYPE_CMOD_OPT = 0x20
    IL2CPP_TYPE_INTERNAL = 0x21
    IL2CPP_TYPE_MODIFIER = 0x40
    IL2CPP_TYPE_SENTINEL = 0x41
    IL2CPP_TYPE_PINNED = 0x45
    IL2CPP_TYPE_ENUM = 0x55
