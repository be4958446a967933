"""Pipeline services: validators, scheduling, caching, scoring and orchestration."""
