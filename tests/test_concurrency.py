import threading

from errors import AlreadyProcessed, OutOfStock


def _run_concurrently(count, target):
    """Start ``count`` threads on a barrier; returns {index: result or exception}."""
    barrier = threading.Barrier(count)
    results = {}

    def worker(index):
        barrier.wait()
        try:
            results[index] = target(index)
        except Exception as e:  # collected for the assertions
            results[index] = e

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(count)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)
    return results


def test_concurrent_approvals_never_oversell(lib, admin):
    book = lib.add_book("Designing Data-Intensive Applications", "Martin Kleppmann", total_copies=3)
    requests = []
    for i in range(8):
        user = lib.add_user(f"Reader {i}", f"reader{i}@library.test")
        requests.append(lib.create_borrow_request(user.id, book.id))

    results = _run_concurrently(8, lambda i: lib.approve_borrow_request(requests[i].id, admin.id))

    approved = [r for r in results.values() if not isinstance(r, Exception)]
    refused = [r for r in results.values() if isinstance(r, OutOfStock)]
    assert len(approved) == 3
    assert len(refused) == 5
    assert lib.get_book(book.id).available_copies == 0
    assert len(lib.list_pending_borrow_requests()) == 5
    assert lib.check_inventory_invariants().ok


def test_concurrent_submissions_with_one_token(lib, member, book):
    results = _run_concurrently(
        6, lambda i: lib.create_borrow_request(member.id, book.id, idempotency_key="double-click")
    )
    ids = {r.id for r in results.values()}
    assert len(ids) == 1
    assert len(lib.list_pending_borrow_requests()) == 1


def test_concurrent_double_approval(lib, admin, member, book):
    request = lib.create_borrow_request(member.id, book.id)
    results = _run_concurrently(2, lambda i: lib.approve_borrow_request(request.id, admin.id))

    outcomes = sorted(type(r).__name__ for r in results.values())
    assert outcomes == ["AlreadyProcessed", "BorrowRequest"]
    assert any(isinstance(r, AlreadyProcessed) for r in results.values())
    assert lib.get_book(book.id).available_copies == 1
    assert len(lib.list_user_records(member.id)) == 1
