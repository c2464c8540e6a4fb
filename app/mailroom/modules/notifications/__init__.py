"""
Resident notifications (email).
"""
