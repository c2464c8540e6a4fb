"""
Central constants for the mailroom application.
"""
from __future__ import annotations

# Display numbers handed out per mailroom. Inclusive bounds.
PACKAGE_NUMBER_MIN = 1
PACKAGE_NUMBER_MAX = 999

# Role keys (seeded by scripts/init_db.py)
ROLE_USER = "user"
ROLE_MANAGER = "manager"
ROLE_ADMIN = "admin"
ROLE_SUPER_ADMIN = "super-admin"

# Carriers offered by the registration form; free text is still accepted.
KNOWN_PROVIDERS = ("Amazon", "DHL", "FedEx", "USPS", "UPS", "Other")

# Permission key -> display name
PERMISSIONS = {
    "packages.view": "Packages: view",
    "packages.register": "Packages: register",
    "packages.update": "Packages: pickup / resolve",
    "packages.resolve_failures": "Packages: resolve failure logs",
    "residents.view": "Residents: view",
    "residents.manage": "Residents: add / remove",
    "mailrooms.settings": "Mailrooms: edit settings",
    "mailrooms.create": "Mailrooms: create",
    "organizations.create": "Organizations: create",
    "staff.manage": "Staff: manage roles and invitations",
}

ROLE_PERMISSIONS = {
    ROLE_USER: ("packages.view", "packages.register", "packages.update", "residents.view"),
    ROLE_MANAGER: (
        "packages.view",
        "packages.register",
        "packages.update",
        "packages.resolve_failures",
        "residents.view",
        "residents.manage",
        "mailrooms.settings",
        "staff.manage",
    ),
    ROLE_ADMIN: (
        "packages.view",
        "packages.register",
        "packages.update",
        "packages.resolve_failures",
        "residents.view",
        "residents.manage",
        "mailrooms.settings",
        "mailrooms.create",
        "staff.manage",
    ),
    ROLE_SUPER_ADMIN: tuple(PERMISSIONS),
}

ROLE_NAMES = {
    ROLE_USER: "Mailroom staff",
    ROLE_MANAGER: "Mailroom manager",
    ROLE_ADMIN: "Organization admin",
    ROLE_SUPER_ADMIN: "Platform admin",
}

# Staff management. Nobody may act on, or hand out, a role ranked above their own.
ASSIGNABLE_ROLES = (ROLE_USER, ROLE_MANAGER, ROLE_ADMIN)
ROLE_RANK = {ROLE_USER: 0, ROLE_MANAGER: 1, ROLE_ADMIN: 2, ROLE_SUPER_ADMIN: 3}
INVITATION_EXPIRY_DAYS = 7
