"""
LockerForge Exception Hierarchy

All exceptions inherit from LockerForgeError for easy catching.
"""


class LockerForgeError(Exception):
    """Base exception for all LockerForge errors"""
    
    def __init__(self, message: str, details: dict = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}
    
    def __str__(self):
        if self.details:
            details_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.message} ({details_str})"
        return self.message


class ValidationError(LockerForgeError):
    """Raised when data validation fails"""
    pass


class ConfigError(ValidationError):
    """Raised when a configuration file is invalid"""
    pass


class ScanFormatError(ValidationError):
    """Raised when scanner output cannot be turned into records"""
    pass


class MalformedVersionError(ValidationError):
    """Raised when a file version string cannot be parsed"""
    pass


class UnknownCollectionTypeError(ValidationError):
    """Raised when a rule names a rule collection that does not exist"""
    pass


class ExemplarError(ValidationError):
    """Raised when a rule's example file is not in the scan or is unsigned"""
    pass


class PolicyFormatError(LockerForgeError):
    """Raised when a serialized policy cannot be parsed"""
    pass


class SnapshotError(PolicyFormatError):
    """Raised when a policy snapshot is unreadable or fails its hash check"""
    pass
