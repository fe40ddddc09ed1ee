def pytest_addoption(parser):
    """Register the e2e script flags so `pytest scripts/test_relay_e2e.py --all` won't fail.

    This only makes pytest accept the script's command-line flags. It does not run the script's main.
    """

    # Options may already be registered by another conftest
    def safe_addoption(*args, **kwargs):
        try:
            parser.addoption(*args, **kwargs)
        except ValueError:
            pass

    safe_addoption("--all", action="store_true", help="Run all tests / script flag")
    safe_addoption("--category", action="store", help="Test category (script flag)")
    safe_addoption("--url", action="store", help="Test url (script flag)")
    safe_addoption("--api-url", action="store", help="Relay base URL (script flag)")
    safe_addoption("--api-key", action="store", help="x-api-key value (script flag)")
    safe_addoption("--local-host", action="store", help="Address Chrome uses to reach the fingerprint page (script flag)")
