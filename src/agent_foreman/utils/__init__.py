"""Small shared helpers: clocks, timestamps and filesystem writes."""
