__version__ = '0.1.0'

from .il2cppfile import Il2CppPE, RegistrationStateError, UnsupportedMetadataVersionError  # noqa: F401
from .parser import (Il2CppPEParser, Il2CppFormatError, MalformedContainerError, UnsupportedArchitectureError,  # noqa: F401
                     UnmappedAddressError, TruncatedReadError, MissingExportDirectoryError)
from .recovery import RecoveryAborted  # noqa: F401
