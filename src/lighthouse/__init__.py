"""Detect stale container images by comparing local digests with the registry's current manifest digest"""

from usingversion import getattr_with_version

__getattr__ = getattr_with_version("lighthouse", __file__, __name__)
