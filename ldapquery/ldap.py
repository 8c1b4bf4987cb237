# DirectoryManager reaches python-ldap through this module, which gives
# python-ldap-faker a ``ldapquery.ldap.initialize`` to patch in tests
# (``ldap_modules = ["ldapquery"]``).
import ldap
from ldap import *  # noqa: F403

__version__ = ldap.__version__
