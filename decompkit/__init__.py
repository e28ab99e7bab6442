"""Loading of ELF, PE, PEF and raw executables into one model, and tools for IDA listings, C headers and DOT files."""

__version__ = "0.1.0"