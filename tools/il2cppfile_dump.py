"""
Display the il2cpp code and metadata registrations of a native PE image.
"""

# pylint: disable=E1101

import os
import sys
import argparse
import logging
import traceback

from il2cppfile import Il2CppPE, Il2CppFormatError
from typing import List


def parse_address(value: str) -> int:
    return int(value, 0)


def process_file(file_path: str, args: argparse.Namespace) -> None:
    if not os.path.isabs(file_path):
        print('[-] Please provide absolute file path of the il2cpp binary.')
        return

    print('---')
    print(f"Processing: {file_path}")
    print('---\n')

    log_level = logging.DEBUG if args.verbose else logging.WARNING
    il2cpp_file = Il2CppPE(file_path, args.metadata_version, max_metadata_usages=args.max_metadata_usages,
                           log_level=log_level)

    print('General information')
    print(f'\tImage base: 0x{il2cpp_file.image_base:x}')
    print(f'\tIs 32-bit: {il2cpp_file.is_32bit}')
    print(f'\tMethod pointer layout: {il2cpp_file.method_pointer_layout.value}')
    print('\tSections:')
    for section in il2cpp_file.image_sections:
        print(f'\t\t{section.name:<8} VA: 0x{section.virtual_address:08x} size: 0x{section.virtual_size:08x} '
              f'raw: 0x{section.raw_pointer:08x} characteristics: 0x{section.characteristics:08x}')
    print()

    if args.code_registration and args.metadata_registration:
        found = il2cpp_file.auto_init(args.code_registration, args.metadata_registration)
    else:
        found = il2cpp_file.find_registrations(args.method_count, args.type_definitions_count, args.image_count)

    if not found:
        print('[-] Could not locate the code and metadata registrations.\n')
        return

    registration = il2cpp_file.registration
    print('Registrations')
    print(f'\tCode registration at file offset: 0x{registration.code_registration.get_file_offset():x}')
    print(f'\tMetadata registration at file offset: 0x{registration.metadata_registration.get_file_offset():x}')
    print(f'\tTypes: {len(registration.types)}')
    print(f'\tGeneric instances: {len(registration.generic_insts)}')
    print(f'\tGeneric method pointers: {len(registration.generic_method_pointers)}')
    print(f'\tInvoker pointers: {len(registration.invoker_pointers)}')
    print(f'\tCustom attribute generators: {len(registration.custom_attribute_generators)}')
    print(f'\tField offsets: {len(registration.field_offsets)}')
    print(f'\tMetadata usages: {len(registration.metadata_usages)}')
    print(f'\tMethod specs: {len(registration.method_specs)}')
    print(f'\tGeneric method index entries: {len(registration.generic_method_index)}')

    if registration.code_gen_modules:
        print('\tCode gen modules:')
        for module, method_pointers in zip(registration.code_gen_modules,
                                           registration.code_gen_module_method_pointers):
            print(f'\t\t{module.name}: {len(method_pointers)} method pointers')
    else:
        print(f'\tMethod pointers: {len(registration.method_pointers)}')
    print()


def parse_arguments(arguments: List[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description='Display the il2cpp registrations of native PE images.')
    parser.add_argument('files', nargs='+', help='absolute paths of GameAssembly.dll / UnityPlayer binaries')
    parser.add_argument('-m', '--metadata-version', type=float, required=True,
                        help='global-metadata.dat version, e.g. 24.4')
    parser.add_argument('--method-count', type=int, default=0, help='number of method definitions in the metadata')
    parser.add_argument('--type-definitions-count', type=int, default=0,
                        help='number of type definitions in the metadata')
    parser.add_argument('--image-count', type=int, default=0, help='number of images in the metadata')
    parser.add_argument('--max-metadata-usages', type=int, default=0, help='number of metadata usages to read')
    parser.add_argument('--code-registration', type=parse_address, default=0,
                        help='known code registration address, skips the search')
    parser.add_argument('--metadata-registration', type=parse_address, default=0,
                        help='known metadata registration address, skips the search')
    parser.add_argument('-v', '--verbose', action='store_true', help='log every loading step')

    return parser.parse_args(arguments)


def main() -> None:
    args = parse_arguments(sys.argv[1:])

    for file_path in args.files:
        try:
            process_file(file_path, args)
        except Il2CppFormatError:
            traceback.print_exc()


if __name__ == '__main__':
    main()
