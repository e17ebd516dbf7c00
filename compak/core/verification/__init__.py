"""
Out-of-process verification of installed components

The harness module runs inside the verification process and imports nothing
from this package beyond itself.
"""
