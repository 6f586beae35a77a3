"""Chat provider adapters. Each module exposes configured(), generate() and stream()."""
