# This makes 'routes' a Python package
