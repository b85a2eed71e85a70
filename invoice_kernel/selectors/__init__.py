"""Read-only selectors for the invoice kernel."""

from invoice_kernel.selectors.invoice_selector import InvoiceSelector

__all__ = ["InvoiceSelector"]
