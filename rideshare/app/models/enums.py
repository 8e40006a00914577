"""
User roles enumeration.

Defines the role types for the rideshare system.
"""

import enum


class UserRole(str, enum.Enum):
    """
    User role enumeration.
    
    Roles:
        ADMIN: System-level access (moderation, hard deletes)
        DRIVER: Offers rides (may also book other drivers' rides)
        PASSENGER: Books seats on rides (default role)
    """
    ADMIN = "ADMIN"
    DRIVER = "DRIVER"
    PASSENGER = "PASSENGER"
