from fusionrag.events import ProgressChannel, TaskStage, TaskState


async def test_events_reach_sync_and_async_subscribers_in_order():
    channel = ProgressChannel()
    seen_sync, seen_async = [], []

    async def on_async(state):
        seen_async.append(state.current)

    channel.subscribe(lambda state: seen_sync.append(state.current))
    channel.subscribe(on_async)
    for i in range(5):
        channel.emit(TaskState(stage=TaskStage.PROCESSING_CHUNKS, current=i, total=5))
    await channel.drain()
    assert seen_sync == [0, 1, 2, 3, 4]
    assert seen_async == [0, 1, 2, 3, 4]
    await channel.aclose()


async def test_failing_subscriber_does_not_affect_others():
    channel = ProgressChannel()
    seen = []

    def broken(state):
        raise RuntimeError("subscriber bug")

    channel.subscribe(broken)
    channel.subscribe(lambda state: seen.append(state.stage))
    channel.emit(TaskState(stage=TaskStage.COMPLETED))
    await channel.drain()
    assert seen == [TaskStage.COMPLETED]
    await channel.aclose()


async def test_unsubscribe_and_emit_without_subscribers():
    channel = ProgressChannel()
    seen = []
    unsubscribe = channel.subscribe(seen.append)
    unsubscribe()
    channel.emit(TaskState(stage=TaskStage.COMPLETED))
    await channel.drain()
    assert seen == []
    await channel.aclose()


def test_task_state_progress():
    assert TaskState(stage=TaskStage.MERGING_ENTITIES, current=1, total=4).progress_percentage == 25.0
    assert TaskState(stage=TaskStage.COMPLETED).progress_percentage == 100.0
    assert TaskState(stage=TaskStage.COMPLETED).is_completed
