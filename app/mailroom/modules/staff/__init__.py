"""
Mailroom staff: the users working a mailroom, their roles, and invitations for new ones.

Removing a user deactivates the account; invitations are single-use and expire.
"""
