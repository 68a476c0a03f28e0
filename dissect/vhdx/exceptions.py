class Error(Exception):
    pass


class InvalidSignature(Error):
    pass


class ChecksumMismatch(Error):
    pass


class ReadError(Error, IOError):
    pass


class InvalidVirtualDisk(Error):
    pass


class UnsupportedRequiredFeature(InvalidVirtualDisk):
    pass


class StructuralBoundsViolation(InvalidVirtualDisk):
    pass


class InconsistentRedundancy(InvalidVirtualDisk):
    pass


class DegenerateComputation(InvalidVirtualDisk):
    pass


class MissingExpectedField(InvalidVirtualDisk):
    pass


class InvalidStateCode(InvalidVirtualDisk):
    pass


class ParentLinkageMismatch(InvalidVirtualDisk):
    pass
