"""Threaded discussion boards for DAOs: message store, reply index and thread assembly."""

__version__ = "1.0.0"
