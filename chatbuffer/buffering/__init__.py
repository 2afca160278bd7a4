"""Core buffering pipeline: store, manager, poller and processor.

Import submodules directly (``from chatbuffer.buffering.manager import
BufferManager``); the models package depends on :mod:`.types`, so this package
keeps no eager imports.
"""
