"""Test suite for npm_hookwatch.

This package contains unit and integration tests for all npm_hookwatch modules:
- test_models: Value types, packument parsing, JSON record round-trips
- test_script_diff: Lifecycle script diffing, allowlist, first-publish policy
- test_versions: Latest/previous resolution and dist-tag reporting
- test_packument: Registry fetches, name encoding, error mapping (respx)
- test_store: Atomic JSON files, findings, pending tasks and the cursor
- test_config: Environment parsing and validation
- test_work_queue: Delay, dedup, rate limiting, retries and shutdown
- test_feed: Changes feed polling, filtering, backoff and cursor commits
- test_notifications: Telegram, Discord and GitHub sinks and the dispatcher
- test_worker: The scan pipeline, dedup across restarts, abandoned jobs
- test_monitor: End-to-end runs against mocked replication and registry
- test_renderer_and_log: Check output rendering and logging setup
- test_cli: The hookwatch command line
"""
