"""State layer.

The cache in this package is the single holder of local entity values.
Only the sync engine writes to it; views read from it and listen to it.
"""
