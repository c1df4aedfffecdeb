"""
Aspect validators. Each module exposes one guarded async validator.
"""
