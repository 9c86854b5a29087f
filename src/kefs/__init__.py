"""kefs: resolve, cache and diagnose Kotlin compiler-plugin jars."""

__version__ = "0.4.0"
