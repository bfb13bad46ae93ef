"""GTK surfaces: selection overlay and prompt windows.

Submodules other than ``text`` import GTK; import them lazily.
"""
