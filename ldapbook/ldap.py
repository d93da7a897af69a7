# Every module in ldapbook imports python-ldap through this module, so that
# python-ldap-faker can replace ``ldapbook.ldap.initialize`` in tests.
import ldap
from ldap import *  # noqa: F403

__version__ = ldap.__version__
