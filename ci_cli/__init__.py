"""
CI Bridge command-line interface.

The ci-bridge command exposes driver operations; configuration helpers
resolve the provider, repository and token from options and environment.
"""
