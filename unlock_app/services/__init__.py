"""
Services package
"""
from .reference_store import DirectoryReferenceStore, ReferenceStore, ReferenceUnavailable

__all__ = ['DirectoryReferenceStore', 'ReferenceStore', 'ReferenceUnavailable']
