def test_import_smoke():
    import engagement.main
    import engagement.jobs.cli
    import engagement.queue.jobs
    import engagement.context.conversation_store

    assert engagement.main.app is not None
