"""
LDAP Role Sync - Keep LDAP users and role groups in line with an application's users and roles.

This package loads roles and users as dirty-tracked directory entries, saves
them back to LDAP, and reconciles the full local user population against the
directory.
"""

__version__ = "1.0.0"
__author__ = "LDAP Sync Team"
