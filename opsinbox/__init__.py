"""OpsInbox: email triage backend with a deterministic rules classifier."""
