# vim: ai:sw=4:ts=4:sta:et:fo=croql
"""
Helpers to manipulate `IAM policies`_ returned by ``get_iam_policy`` of the Google Cloud clients.

.. _IAM policies: https://cloud.google.com/iam/docs/reference/rest/v1/Policy
"""
from typing import Any

SERVICE_ACCOUNT_MEMBER_PREFIX: str = "serviceAccount:"
ALL_USERS_MEMBER: str = "allUsers"


def service_account_member(email: str) -> str:
    """
    Adds the ``serviceAccount:`` prefix, if missing.
    """
    if not isinstance(email, str) or not email.strip():
        raise TypeError(f"Service account must be a non-empty string. Got: <{email}>({type(email)})")
    email = email.strip()
    if ":" in email:
        return email
    return f"{SERVICE_ACCOUNT_MEMBER_PREFIX}{email}"


def has_member(policy: Any, *, role: str, member: str) -> bool:
    """
    Checks if ``member`` is bound to ``role`` in ``policy``.
    """
    return any(binding.role == role and member in binding.members for binding in policy.bindings)


def add_member(policy: Any, *, role: str, member: str) -> bool:
    """
    Binds ``member`` to ``role``, in place.

    Returns:
        :py:obj:`True` if ``policy`` changed.
    """
    if has_member(policy, role=role, member=member):
        return False
    for binding in policy.bindings:
        if binding.role == role:
            binding.members.append(member)
            return True
    policy.bindings.add(role=role, members=[member])
    return True


def remove_member(policy: Any, *, role: str, member: str) -> bool:
    """
    Unbinds ``member`` from ``role``, in place. Bindings left without members are removed.

    Returns:
        :py:obj:`True` if ``policy`` changed.
    """
    changed = False
    for binding in list(policy.bindings):
        if binding.role == role and member in binding.members:
            binding.members.remove(member)
            changed = True
            if not binding.members:
                policy.bindings.remove(binding)
    return changed
