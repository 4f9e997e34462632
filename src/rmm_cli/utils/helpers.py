"""Helper utility functions for RMM-CLI."""

import platform

_ARCH_ALIASES = {
    "x86_64": "x86_64",
    "amd64": "x86_64",
    "x64": "x86_64",
    "aarch64": "arm64",
    "arm64": "arm64",
    "armv8l": "arm64",
    "armv7l": "arm",
    "armv7": "arm",
    "i386": "x86",
    "i686": "x86",
}

# Spellings that show up in release asset names for each architecture
ARCH_TOKENS = {
    "x86_64": ("x86_64", "amd64", "x64"),
    "arm64": ("arm64", "aarch64", "arm64-v8a"),
    "arm": ("armv7", "armeabi", "arm32"),
    "x86": ("x86", "i686", "i386"),
}


def detect_platform():
    """Detect the current platform.

    Returns:
        str: Platform name (macos, linux, windows, android).
    """
    system = platform.system().lower()

    if system == "darwin":
        return "macos"
    elif system == "linux":
        if "android" in platform.release().lower():
            return "android"
        return "linux"
    elif system == "windows":
        return "windows"
    else:
        return "unknown"


def detect_arch():
    """Detect the current CPU architecture in normalized form.

    Returns:
        str: One of x86_64, arm64, arm, x86 or the raw machine string.
    """
    machine = platform.machine().lower()
    return _ARCH_ALIASES.get(machine, machine)


def host_asset_tokens():
    """Name fragments that identify assets built for this host."""
    arch = detect_arch()
    tokens = list(ARCH_TOKENS.get(arch, (arch,)))
    tokens.append(detect_platform())
    return [t for t in tokens if t and t != "unknown"]
