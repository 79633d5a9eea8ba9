"""
VM lifecycle load harness.

Each virtual user creates a VM through the orchestration API, checks that its
port-forward tunnel echoes a random payload byte-exact, and deletes the VM
again, while a ramp scheduler grows the number of concurrent users over time.
"""
