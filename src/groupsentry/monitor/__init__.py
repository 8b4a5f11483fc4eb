"""Audit log ingestion, threshold-based security detection, remediation and
webhook notification for one VRChat group.

Stores under ``groupsentry.services`` import the models defined here, so this
package does not re-export its submodules.
"""
