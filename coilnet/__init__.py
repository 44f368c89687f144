"""Pod networking runners: CNI request handler, address block garbage collector and router."""

__version__ = "2.10.0"