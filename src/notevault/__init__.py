"""
NoteVault - a personal note store with portable XML backups.

Notes are grouped into categories; private notes may be encrypted with a
password-derived key. Backups can be merged back into the store under one
of several merge policies, and the store can be re-keyed atomically when
the password changes.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("notevault")
except PackageNotFoundError:
    __version__ = "0.3.0"
