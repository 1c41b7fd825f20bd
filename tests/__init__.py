"""
Test suite for the MedBook appointment service.

Covers the slot ledger, booking coordinator, appointment lifecycle, rating
aggregate, collaborators and the HTTP surface.
"""
import os

# Set environment for testing
os.environ["TESTING"] = "1"
