"""
Connecting and binding to the hosts of an address book source.
"""

import logging
import re
from typing import TYPE_CHECKING

from ldap.dn import explode_dn

from .client import SearchResult
from .exceptions import BindError, DirectoryConnectionError

if TYPE_CHECKING:
    from .context import DirectoryContext

logger = logging.getLogger(__name__)

#: The placeholders substituted into DNs of user specific sources.  Longer
#: names come first so ``%dn`` is not read as ``%d`` followed by ``n``.
USER_PLACEHOLDERS = re.compile(r"%(?:dn|dc|fu|d|u)")


def domain_components(domain: str) -> str:
    """
    Return ``domain`` as a DN, e.g. ``dc=example,dc=com``.
    """
    return ",".join(f"dc={part}" for part in domain.split(".")) if domain else ""


def substitute_user(template: str, replacements: dict[str, str]) -> str:
    """
    Replace the ``%u``, ``%d``, ``%fu``, ``%dc`` and ``%dn`` placeholders in
    ``template``.
    """
    if not template:
        return template
    return USER_PLACEHOLDERS.sub(lambda m: replacements.get(m.group(0), ""), template)


class Connector:
    """
    Connect to the first configured host that accepts both the connection
    and the bind.

    For user specific sources the bind DN, base DN and group base DN are
    computed from the current user's email address, optionally after looking
    up the user's DN with a search, and written back to ``context``.

    Args:
        context: the directory context of the source

    Keyword Args:
        user_email: the email address of the current user
        user_password: the password of the current user, used when the source
            has no ``bind_pass``

    """

    def __init__(
        self,
        context: "DirectoryContext",
        user_email: str | None = None,
        user_password: str | None = None,
    ) -> None:
        self.context = context
        self.options = context.options
        self.client = context.client
        self.user_email = user_email
        self.user_password = user_password
        #: ``True`` once a host accepted the connection and bind
        self.ready: bool = False

    def _replacements(self) -> dict[str, str]:
        user, domain = "", ""
        if self.user_email:
            user, _, domain = self.user_email.partition("@")
        else:
            domain = self.context.codec.mail_domain or self.options.mail_domain or ""
        return {
            "%dn": "",
            "%dc": domain_components(domain),
            "%d": domain,
            "%fu": self.user_email or "",
            "%u": user,
        }

    def _find_user_dn(self, replacements: dict[str, str]) -> str:
        """
        Search for the current user's entry and return the value of its RDN.

        Raises:
            BindError: the search bind failed
            DirectoryConnectionError: no entry was found and no
                ``search_dn_default`` is configured

        """
        options = self.options
        if options.search_bind_dn and options.search_bind_pw:
            if not self.client.bind(options.search_bind_dn, options.search_bind_pw):
                msg = f"Could not bind as {options.search_bind_dn}"
                raise BindError("bindfailed", msg)
        base = substitute_user(options.search_base_dn, replacements)
        filterstr = substitute_user(options.search_filter, replacements)
        logger.debug("ldapbook.connection.user-search base=%s filter=%s", base, filterstr)
        result = self.client.search(base, filterstr, "sub", ["uid"])
        if isinstance(result, SearchResult) and (found := result.get_dn()):
            logger.debug("ldapbook.connection.user-search.found dn=%s", found)
            return explode_dn(found, notypes=True)[0]
        if options.search_dn_default:
            return options.search_dn_default
        msg = "DN not found using LDAP search"
        raise DirectoryConnectionError("connectionfailed", msg)

    def _bind(self) -> bool:
        options = self.options
        bind_pass = options.bind_pass
        bind_user = options.bind_user
        bind_dn = options.bind_dn
        self.context.base_dn = options.base_dn
        groups_base_dn = options.groups.base_dn if options.groups is not None else None
        self.context.groups_base_dn = groups_base_dn or options.base_dn

        if options.user_specific:
            if not bind_pass:
                bind_pass = self.user_password or ""
            replacements = self._replacements()
            if options.search_base_dn and options.search_filter:
                replacements["%dn"] = self._find_user_dn(replacements)
            bind_dn = substitute_user(bind_dn, replacements)
            self.context.base_dn = substitute_user(self.context.base_dn, replacements)
            self.context.groups_base_dn = substitute_user(
                self.context.groups_base_dn, replacements
            )
            if not bind_user:
                bind_user = replacements["%u"]

        if not bind_pass:
            return True
        if bind_dn:
            return self.client.bind(bind_dn, bind_pass)
        if options.auth_cid:
            return self.client.sasl_bind(options.auth_cid, bind_pass, bind_user)
        return self.client.sasl_bind(bind_user, bind_pass)

    def connect(self) -> None:
        """
        Try each configured host in order until one connects and binds.

        Raises:
            DirectoryConnectionError: no host could be connected to and bound,
                or the current user's DN could not be found

        """
        if self.ready:
            return
        last_host = None
        for host in self.options.hosts:
            last_host = host
            if not self.client.connect(host):
                continue
            try:
                self.ready = self._bind()
            except BindError as e:
                logger.warning("ldapbook.connection.bind.failed host=%s error=%s", host, e)
                continue
            if self.ready:
                logger.info("ldapbook.connection.ready source=%s host=%s", self.options.name, host)
                return
            logger.warning("ldapbook.connection.bind.failed host=%s", host)
        msg = f"Could not connect to any LDAP server, last tried {last_host}"
        raise DirectoryConnectionError("connectionfailed", msg)
