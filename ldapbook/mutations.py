"""
Planning and applying changes to contact entries.

Saving a contact is split in two: :py:meth:`MutationPlanner.plan` compares
the stored entry with the new save data and produces a
:py:class:`MutationPlan`; :py:meth:`MutationPlanner.apply` runs the plan's
steps against the directory in a fixed order.

Plans are applied best-effort: when a step fails, the steps before it stay
applied and :py:class:`~ldapbook.exceptions.SaveError` is raised.
"""

import logging
from collections import namedtuple
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from ldap.dn import escape_dn_chars

from .exceptions import SaveError, ValidationError
from .groups import parent_dn
from .typing import AttributeMap, AttributeValue

if TYPE_CHECKING:
    from .codec import LogicalRecord
    from .context import DirectoryContext

logger = logging.getLogger(__name__)

#: One directory operation of a plan.  ``payload`` is the attribute map, the
#: :py:class:`RenameDirective`, or ``None`` for deletes.
Step = namedtuple("Step", ["action", "dn", "payload"])


@dataclass(frozen=True)
class RenameDirective:
    #: The new RDN, e.g. ``cn=Jane Roe``
    new_rdn: str
    #: The DN of the entry after the rename
    new_dn: str


def sub_entry_dn(attribute: str, value: AttributeValue, parent: str) -> str:
    """
    The DN of the child entry storing ``value`` of ``attribute`` under
    ``parent``.
    """
    return f"{attribute}={escape_dn_chars(str(value))},{parent}"


@dataclass
class MutationPlan:
    """
    The changes needed to turn a stored contact entry into the saved one.
    No attribute appears in more than one of :py:attr:`additions`,
    :py:attr:`replacements` and :py:attr:`deletions`.
    """

    #: Attributes the entry did not have
    additions: AttributeMap = field(default_factory=dict)
    #: Attributes whose values changed
    replacements: AttributeMap = field(default_factory=dict)
    #: Attributes to remove
    deletions: AttributeMap = field(default_factory=dict)
    #: Child entries to remove, by attribute
    sub_deletions: AttributeMap = field(default_factory=dict)
    #: Child entries to create, by attribute
    sub_additions: AttributeMap = field(default_factory=dict)
    #: The rename, when the RDN attribute changed
    rename: RenameDirective | None = None
    #: Child entry attribute to the object classes of the child entry
    sub_classes: Mapping[str, tuple[str, ...]] = field(default_factory=dict)

    def __bool__(self) -> bool:
        return bool(
            self.additions
            or self.replacements
            or self.deletions
            or self.sub_deletions
            or self.sub_additions
            or self.rename
        )

    def steps(self, dn: str) -> list[Step]:
        """
        The operations to apply to the entry ``dn``, in order: deletions,
        replacements, child entry removals, additions, the rename, and child
        entry creation under the final DN.
        """
        steps: list[Step] = []
        if self.deletions:
            steps.append(Step("mod_delete", dn, self.deletions))
        if self.replacements:
            steps.append(Step("mod_replace", dn, self.replacements))
        for attr, values in self.sub_deletions.items():
            steps.extend(Step("delete", sub_entry_dn(attr, v, dn), None) for v in values)
        if self.additions:
            steps.append(Step("mod_add", dn, self.additions))
        if self.rename is not None:
            steps.append(Step("rename", dn, self.rename))
            dn = self.rename.new_dn
        for attr, values in self.sub_additions.items():
            for value in values:
                steps.append(
                    Step(
                        "add",
                        sub_entry_dn(attr, value, dn),
                        {
                            attr: [value],
                            "objectclass": list(self.sub_classes.get(attr, ())),
                        },
                    )
                )
        return steps


@dataclass
class InsertPlan:
    #: The DN of the new entry
    dn: str
    #: The attributes of the new entry
    attributes: AttributeMap
    #: Attributes stored in child entries of the new entry
    sub_entries: AttributeMap = field(default_factory=dict)
    #: Child entry attribute to the object classes of the child entry
    sub_classes: Mapping[str, tuple[str, ...]] = field(default_factory=dict)


class MutationPlanner:
    """
    Plan and apply inserts, updates and deletes of contact entries.

    Args:
        context: the directory context of the source

    """

    def __init__(self, context: "DirectoryContext") -> None:
        self.context = context
        self.catalog = context.catalog
        self.codec = context.codec
        self.client = context.client

    def plan(self, record: "LogicalRecord", save_data: Mapping[str, Any]) -> MutationPlan:
        """
        Compare ``record`` as stored with ``save_data``.

        An attribute missing from the stored entry is added; an attribute
        with no new value is deleted unless it is required; a changed
        attribute is replaced.  Child entry attributes are removed and
        recreated instead.  A changed RDN attribute becomes a rename, and then
        all child entries are removed before and recreated after it.  When
        ``save_data`` has no ``photo`` key the stored photo is kept.

        Args:
            record: the stored record, as read by the codec
            save_data: the new logical values

        Returns:
            The plan.

        """
        new_data = self.codec.encode(save_data)
        old_data = record.raw
        photo_attr = self.catalog.fieldmap.get("photo")
        if photo_attr and "photo" not in save_data:
            if old_data.get(photo_attr):
                new_data[photo_attr] = list(old_data[photo_attr])
            else:
                new_data.pop(photo_attr, None)

        plan = MutationPlan(sub_classes=self.catalog.sub_fields)
        unchanged_subs: AttributeMap = {}
        for attr in dict.fromkeys(self.catalog.fieldmap.values()):
            new = [v for v in new_data.get(attr, []) if v not in ("", None)]
            old = list(old_data.get(attr) or [])
            if self.catalog.is_sub_field(attr):
                if old != new:
                    if old:
                        plan.sub_deletions[attr] = old
                    if new:
                        plan.sub_additions[attr] = new
                elif old:
                    unchanged_subs[attr] = old
                continue
            if old == new:
                continue
            if not old:
                plan.additions[attr] = new
            elif not new:
                if not self.catalog.is_required(attr):
                    plan.deletions[attr] = []
            else:
                plan.replacements[attr] = new

        rdn = self.catalog.rdn
        if rdn and rdn in plan.replacements and record.dn:
            new_rdn = f"{rdn}={escape_dn_chars(str(plan.replacements[rdn][0]))}"
            new_dn = f"{new_rdn},{parent_dn(record.dn)}"
            if new_dn != record.dn:
                plan.rename = RenameDirective(new_rdn, new_dn)
                del plan.replacements[rdn]
        if plan.rename is not None:
            for attr, values in unchanged_subs.items():
                plan.sub_deletions.setdefault(attr, values)
                plan.sub_additions.setdefault(attr, values)
        return plan

    def _execute(self, step: Step) -> bool:
        if step.action == "rename":
            return self.client.rename(step.dn, step.payload.new_rdn, None, True)
        if step.action == "delete":
            return self.client.delete(step.dn)
        return getattr(self.client, step.action)(step.dn, step.payload)

    def apply(self, plan: MutationPlan, dn: str) -> str:
        """
        Apply ``plan`` to the entry ``dn``.

        Raises:
            SaveError: a step failed.  The steps before it stay applied.

        Returns:
            The DN of the entry afterwards.

        """
        for step in plan.steps(dn):
            if not self._execute(step):
                msg = f"{step.action} failed for {step.dn}"
                raise SaveError("errorsaving", msg)
            logger.debug("ldapbook.mutations.step action=%s dn=%s", step.action, step.dn)
        return plan.rename.new_dn if plan.rename is not None else dn

    def plan_insert(self, save_data: Mapping[str, Any]) -> InsertPlan:
        """
        Build the entry for a new contact, with generated values filled in.

        Raises:
            ValidationError: required attributes are missing
            SaveError: no RDN attribute is configured

        Returns:
            The plan.

        """
        attributes = self.codec.encode(save_data)
        attributes["objectclass"] = list(self.context.options.object_classes)
        self.context.autovalues.apply(attributes)
        missing = [f for f in self.catalog.required_fields if not attributes.get(f)]
        if missing:
            msg = f"Missing required attributes: {', '.join(missing)}"
            raise ValidationError("formincomplete", msg, missing=missing)
        rdn = self.catalog.rdn
        if not rdn:
            msg = "No RDN attribute is configured for this address book"
            raise SaveError("errorsaving", msg)
        if not attributes.get(rdn):
            msg = f"Missing required attributes: {rdn}"
            raise ValidationError("formincomplete", msg, missing=[rdn])
        dn = f"{rdn}={escape_dn_chars(str(attributes[rdn][0]))},{self.context.base_dn}"
        sub_entries = {
            attr: attributes.pop(attr)
            for attr in list(self.catalog.sub_fields)
            if attributes.get(attr)
        }
        return InsertPlan(dn, attributes, sub_entries, self.catalog.sub_fields)

    def apply_insert(self, plan: InsertPlan) -> str:
        """
        Create the entry and child entries of ``plan``.

        Raises:
            SaveError: the directory refused an add

        Returns:
            The DN of the new entry.

        """
        if not self.client.add(plan.dn, plan.attributes):
            msg = f"Could not add {plan.dn}"
            raise SaveError("errorsaving", msg)
        for attr, values in plan.sub_entries.items():
            for value in values:
                sub_dn = sub_entry_dn(attr, value, plan.dn)
                entry = {attr: [value], "objectclass": list(plan.sub_classes.get(attr, ()))}
                if not self.client.add(sub_dn, entry):
                    msg = f"Could not add {sub_dn}"
                    raise SaveError("errorsaving", msg)
        logger.info("ldapbook.mutations.insert dn=%s", plan.dn)
        return plan.dn

    def delete_entry(self, dn: str) -> None:
        """
        Delete the entry ``dn`` and its child entries.

        Raises:
            SaveError: the directory refused a delete

        """
        if self.catalog.sub_filter:
            for entry in self.client.list_entries(dn, self.catalog.sub_filter) or []:
                if not self.client.delete(entry.dn):
                    msg = f"Could not delete {entry.dn}"
                    raise SaveError("errorsaving", msg)
        if not self.client.delete(dn):
            msg = f"Could not delete {dn}"
            raise SaveError("errorsaving", msg)
        logger.info("ldapbook.mutations.delete dn=%s", dn)
