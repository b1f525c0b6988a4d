"""
browserctl - persistent headless browser driven over a line protocol.

Provides:
- A long-lived Playwright server answering JSON commands on stdin/stdout
- A dispatcher that spawns or attaches to that server as a singleton
- Disposable one-shot browsers for stateless page reads
- Scripted single-process sessions
"""
__version__ = "0.1.0"
