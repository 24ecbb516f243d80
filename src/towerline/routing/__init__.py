"""Command parsing, classification, queue inference, and the two routers."""
