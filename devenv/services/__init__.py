"""
Services Module

Key Submodules:
- object_store: S3-compatible storage shared by snapshot source and destination
- orchestration.kubernetes: Kubernetes API access, manifests and readiness
- snapshot: snapshot generation, staging and restore
- apps: application registry
- runtime: cluster runtime contract and registry
- alert: best-effort desktop alerts
"""
