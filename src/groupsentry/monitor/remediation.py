from __future__ import annotations

import logging
from typing import Optional

from ..interfaces import GroupApi
from ..services.security_incident_store import SecurityIncidentStore
from .models import SecurityIncident
from .policy import EffectivePolicy

log = logging.getLogger("groupsentry.remediation")


class RemediationExecutor:
    """Strips the offending actor's group roles after an incident."""

    def __init__(self, api: GroupApi, incidents: SecurityIncidentStore) -> None:
        self._api = api
        self._incidents = incidents

    async def _note(self, incident: SecurityIncident, note: str) -> SecurityIncident:
        await self._incidents.append_details(incident.incident_id, note)
        return await self._incidents.get(incident.incident_id) or incident

    def _owner_gate_failure(self, policy: EffectivePolicy) -> Optional[str]:
        if not policy.require_owner_role:
            return None
        current = self._api.current_user_id
        if not current:
            return "⚠️ Failed to remove roles: Current user not authenticated"
        if policy.owner_user_id and current != policy.owner_user_id:
            return "⚠️ Failed to remove roles: Only the designated owner can perform this action"
        return None

    async def remediate(self, incident: SecurityIncident, policy: EffectivePolicy) -> SecurityIncident:
        if not policy.auto_remove_roles:
            return incident

        refusal = self._owner_gate_failure(policy)
        if refusal:
            log.warning("Not removing roles from %s: %s", incident.actor_user_id, refusal)
            return await self._note(incident, refusal)

        group_id, user_id = incident.group_id, incident.actor_user_id
        name = incident.actor_display_name or user_id
        try:
            role_ids = await self._api.get_member_role_ids(group_id, user_id)
        except Exception as e:
            log.exception("Could not load roles of %s", user_id)
            return await self._note(incident, f"✗ Error removing roles: {e}")

        if not role_ids:
            log.warning("User %s has no roles to remove", name)
            return await self._note(incident, "⚠️ User had no roles to remove")

        log.info("Removing %d role(s) from %s (%s)", len(role_ids), name, user_id)
        removed: list[str] = []
        for role_id in role_ids:
            try:
                if await self._api.remove_member_role(group_id, user_id, role_id):
                    removed.append(role_id)
                    log.info("Removed role %s from %s", role_id, name)
                else:
                    log.warning("Failed to remove role %s from %s", role_id, name)
            except Exception:
                log.exception("Error removing role %s from %s", role_id, name)

        if removed:
            note = f"✓ Automatically removed {len(removed)} role(s) from user"
        else:
            note = "✗ No roles could be removed"
            log.warning("No roles were removed from %s", name)
        await self._incidents.mark_roles_removed(incident.incident_id, removed, note)
        return await self._incidents.get(incident.incident_id) or incident
