"""compak - component package installer

Installs self-contained component packages (code, libraries, resources and an
installation manifest) into a local directory, resolves delegate packages and
verifies the result in a separate interpreter.
"""

__version__ = "0.3.0"
