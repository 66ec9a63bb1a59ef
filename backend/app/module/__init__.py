"""Subpackage holding the internal app modules (logging helper, apimonitor, lifecycle, middleware).

Import the submodules directly; the package itself stays import-free so the
worker process can use the logging helper without loading the web stack.
"""
