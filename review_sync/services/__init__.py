"""
Review sync services.

Import from the submodules directly; clients depend on token_cipher, so this
package keeps no eager imports.
"""
