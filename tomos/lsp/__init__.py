"""LSP integration for Tomos.

Spawns and supervises language servers over stdio, keeps a mirror of
every open document, and exposes the requests the edit engine needs.
"""
