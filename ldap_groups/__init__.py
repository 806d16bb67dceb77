"""
LDAP Groups Sync - Keep local group assignments in step with directory group memberships.

This package resolves a user's LDAP/AD group memberships (optionally following
nested groups) and computes which local groups should be added or removed based
on a configured mapping between directory groups and local groups.
"""

__version__ = "1.0.0"
__author__ = "LDAP Groups Team"
