"""
Tomos - surgical, symbol-level source editing over language servers.

Provides:
- Supervised language server processes speaking LSP over stdio
- Document synchronization with a client-side content mirror
- Crash detection with automatic restart and document replay
- Symbol-addressed edits (insert after, replace, delete, rename)

The name "Tomos" (Greek: τόμος) means a cut or a slice - the engine cuts
exactly one symbol out of a file instead of rewriting the whole thing.
"""

__version__ = "0.1.0"
