pytest_plugins = [
    "tests.plugins.fake_pg",
    "tests.plugins.rag_db",
]
