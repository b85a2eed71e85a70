"""
Invoice Kernel

The persistence, domain and audit core of the invoice approval system:
- Append-only approval history
- Terminal-state immutability
- Monotonic, locked-row sequence counters
- Full auditability via hash chain
"""

__version__ = "0.1.0"
