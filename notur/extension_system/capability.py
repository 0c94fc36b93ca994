from __future__ import annotations

import re

_MAJOR_PATTERN = re.compile(r"(\d+)")


class CapabilityMatcher:
    """Major-version gate for optional extension capabilities.

    Accepted constraint spellings are ``"1"``, ``"1.0"``, ``"^1"``, ``"~1"``
    and ``">=1"``. Only the first integer is used, so every operator reduces
    to an exact major-version comparison.
    """

    @staticmethod
    def matches(constraint: str, supported_major: int) -> bool:
        """Check a capability constraint against the supported major version.

        Args:
            constraint: Constraint string declared by the extension.
            supported_major: Major version of the capability the host provides.

        Returns:
            True only if the constraint's first integer equals ``supported_major``.
            Empty, non-numeric and zero constraints never match.
        """
        if not constraint:
            return False

        match = _MAJOR_PATTERN.search(constraint)
        if match is None:
            return False

        requested_major = int(match.group(1))
        if requested_major <= 0:
            return False

        return requested_major == supported_major
