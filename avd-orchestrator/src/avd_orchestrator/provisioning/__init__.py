"""Bulk APK provisioning and launch of provisioned apps."""
