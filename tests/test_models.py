import pytest

from errors import DuplicateKeyError
from models import DatabaseQueue


async def _user_with_feeds(db, *names):
    user = await db.execute('create_user', name='alice')
    feeds = []
    for name in names:
        feeds.append(await db.execute(
            'create_feed', name=name, url=f'https://example.com/{name}.xml', user_id=user['id']
        ))
    return user, feeds


@pytest.mark.asyncio
async def test_select_next_feed_prefers_never_fetched_then_oldest(db):
    """Feeds rotate oldest-first; never-fetched feeds come before any fetched one."""
    _, (a, b, c) = await _user_with_feeds(db, 'a', 'b', 'c')

    order = []
    for now in (100.0, 200.0, 300.0, 400.0):
        feed = await db.execute('select_next_feed')
        order.append(feed['name'])
        assert await db.execute('mark_feed_fetched', feed_id=feed['id'], now=now)

    assert order == ['a', 'b', 'c', 'a']
    refreshed = await db.execute('get_feed', feed_id=a['id'])
    assert refreshed['last_fetched_at'] == 400.0
    assert refreshed['updated_at'] == 400.0


@pytest.mark.asyncio
async def test_select_next_feed_orders_by_staleness(db):
    _, (a, b, c) = await _user_with_feeds(db, 'a', 'b', 'c')
    await db.execute('mark_feed_fetched', feed_id=c['id'], now=200.0)
    await db.execute('mark_feed_fetched', feed_id=b['id'], now=100.0)

    order = []
    for now in (300.0, 400.0, 500.0, 600.0):
        feed = await db.execute('select_next_feed')
        order.append(feed['name'])
        await db.execute('mark_feed_fetched', feed_id=feed['id'], now=now)

    assert order == ['a', 'b', 'c', 'a']


@pytest.mark.asyncio
async def test_select_next_feed_with_no_feeds(db):
    assert await db.execute('select_next_feed') is None


@pytest.mark.asyncio
async def test_newly_added_feed_is_selected_first(db):
    user, (a,) = await _user_with_feeds(db, 'a')
    await db.execute('mark_feed_fetched', feed_id=a['id'], now=100.0)

    late = await db.execute('create_feed', name='late', url='https://example.com/late.xml', user_id=user['id'])
    assert late['last_fetched_at'] is None
    assert (await db.execute('select_next_feed'))['id'] == late['id']


@pytest.mark.asyncio
async def test_duplicate_user_raises(db):
    await db.execute('create_user', name='alice')
    with pytest.raises(DuplicateKeyError) as exc:
        await db.execute('create_user', name='alice')
    assert exc.value.table == 'users'
    assert len(await db.execute('list_users')) == 1


@pytest.mark.asyncio
async def test_duplicate_feed_url_raises(db):
    user, _ = await _user_with_feeds(db, 'a')
    with pytest.raises(DuplicateKeyError):
        await db.execute('create_feed', name='again', url='https://example.com/a.xml', user_id=user['id'])


@pytest.mark.asyncio
async def test_follow_lifecycle(db):
    user, (a, b) = await _user_with_feeds(db, 'a', 'b')

    follow = await db.execute('create_feed_follow', user_id=user['id'], feed_id=a['id'])
    assert follow['feed_name'] == 'a'
    assert follow['user_name'] == 'alice'

    with pytest.raises(DuplicateKeyError):
        await db.execute('create_feed_follow', user_id=user['id'], feed_id=a['id'])

    await db.execute('create_feed_follow', user_id=user['id'], feed_id=b['id'])
    follows = await db.execute('get_feed_follows_for_user', user_id=user['id'])
    assert [f['feed_name'] for f in follows] == ['a', 'b']

    assert await db.execute('delete_feed_follow', user_id=user['id'], url=a['url']) == 1
    assert await db.execute('delete_feed_follow', user_id=user['id'], url=a['url']) == 0
    follows = await db.execute('get_feed_follows_for_user', user_id=user['id'])
    assert [f['feed_name'] for f in follows] == ['b']


@pytest.mark.asyncio
async def test_post_url_is_unique_across_feeds(db):
    _, (a, b) = await _user_with_feeds(db, 'a', 'b')

    await db.execute('insert_post', title='One', url='https://example.com/p/1', feed_id=a['id'])
    with pytest.raises(DuplicateKeyError):
        await db.execute('insert_post', title='One again', url='https://example.com/p/1', feed_id=b['id'])

    assert await db.execute('count_posts') == 1
    assert await db.execute('count_posts', feed_id=b['id']) == 0


@pytest.mark.asyncio
async def test_posts_for_user_newest_first_and_followed_only(db):
    user, (a, b) = await _user_with_feeds(db, 'a', 'b')
    await db.execute('create_feed_follow', user_id=user['id'], feed_id=a['id'])

    await db.execute('insert_post', title='Old', url='https://example.com/p/old', feed_id=a['id'], published_at=100)
    await db.execute('insert_post', title='Undated', url='https://example.com/p/undated', feed_id=a['id'])
    await db.execute('insert_post', title='New', url='https://example.com/p/new', feed_id=a['id'], published_at=200)
    await db.execute('insert_post', title='Unfollowed', url='https://example.com/p/other', feed_id=b['id'], published_at=300)

    posts = await db.execute('get_posts_for_user', user_id=user['id'], limit=10)
    assert [p['title'] for p in posts] == ['New', 'Old', 'Undated']
    assert posts[0]['feed_name'] == 'a'

    posts = await db.execute('get_posts_for_user', user_id=user['id'], limit=2)
    assert [p['title'] for p in posts] == ['New', 'Old']


@pytest.mark.asyncio
async def test_delete_all_users_cascades(db):
    user, (a,) = await _user_with_feeds(db, 'a')
    await db.execute('create_feed_follow', user_id=user['id'], feed_id=a['id'])
    await db.execute('insert_post', title='One', url='https://example.com/p/1', feed_id=a['id'])

    assert await db.execute('delete_all_users') == 1
    assert await db.execute('list_users') == []
    assert await db.execute('list_feeds') == []
    assert await db.execute('count_posts') == 0
    assert await db.execute('get_feed_by_url', url=a['url']) is None


@pytest.mark.asyncio
async def test_unknown_and_private_operations_are_rejected(db):
    with pytest.raises(AttributeError):
        await db.execute('drop_everything')
    with pytest.raises(AttributeError):
        await db.execute('_worker')


@pytest.mark.asyncio
async def test_execute_requires_running_worker(tmp_path):
    queue = DatabaseQueue(str(tmp_path / "idle.db"))
    with pytest.raises(RuntimeError):
        await queue.execute('list_users')


@pytest.mark.asyncio
async def test_schema_survives_reopen(isolated_config):
    first = DatabaseQueue(isolated_config.DATABASE_PATH)
    await first.start()
    await first.execute('create_user', name='alice')
    await first.stop()

    second = DatabaseQueue(isolated_config.DATABASE_PATH)
    await second.start()
    try:
        users = await second.execute('list_users')
        assert [u['name'] for u in users] == ['alice']
    finally:
        await second.stop()
