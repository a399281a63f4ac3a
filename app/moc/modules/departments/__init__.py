"""Department registry (name + designated approver)."""
