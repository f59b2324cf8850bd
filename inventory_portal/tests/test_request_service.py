import asyncio
import pytest
from inventory_portal.constants import (ApprovalPolicy, Decision, RequestStatus,
                                        RequestType, UserRole)
from inventory_portal.ds_exceptions import (ForbiddenError, InsufficientStockError,
                                            InvalidInputError, InvalidStateError,
                                            NonExistentRequestIdError)
from inventory_portal.schemas import (ApproverSelection, FulfilledLine, RequesterInfo,
                                      RequestLine)
from inventory_portal.services.request_service import derive_status


@pytest.fixture
async def stock(portal, category):
    """Three items at 10 units each"""
    names = ["Drop cable", "ONT router", "Splice tray"]
    return [await portal.create_item(name, quantity=10, category_id=category.category_id)
            for name in names]


async def quantities(portal, items):
    return [(await portal.items.get_item_by_id(item.item_id)).quantity for item in items]


class TestCreateRequest:
    """Test cases for request creation"""

    async def test_create_request(self, portal, stock, approvers, make_request, notifier):
        request = await make_request([(stock[0].item_id, 4), (stock[1].item_id, 2)], approvers)
        await portal.signal.drain()

        assert request.status == RequestStatus.Pending
        assert request.request_type == RequestType.MaterialRequest
        assert request.team_leader_name == "Tina"
        assert [line.quantity_requested for line in request.items] == [4, 2]
        assert {a.user_id for a in request.approvers} == {u.user_id for u in approvers}
        # no stock moves before finalize
        assert await quantities(portal, stock) == [10, 10, 10]
        assert notifier.statuses == [(request.request_id, RequestStatus.Pending)]

    async def test_lines_by_name_and_all_approvers(self, portal, stock, approvers, requester):
        request = await portal.create_request(
            requester,
            [RequestLine(quantity_requested=1, item_name="ONT router")],
            ApproverSelection.everyone(),
        )
        assert request.items[0].item_id == stock[1].item_id
        assert len(request.approvers) == 2

    async def test_team_leader_defaults_to_creator(self, portal, stock, approvers):
        request = await portal.create_request(
            RequesterInfo(created_by="Tom"),
            [RequestLine(quantity_requested=1, item_id=stock[0].item_id)],
            ApproverSelection.explicit(approvers[0].user_id),
            RequestType.ItemReturn,
        )
        assert request.team_leader_name == "Tom"
        assert request.request_type == RequestType.ItemReturn

    @pytest.mark.parametrize("lines", [
        [],
        [{'quantity_requested': 0, 'item_id': 1}],
        [{'quantity_requested': 1}],
        [{'quantity_requested': 1, 'item_name': "  "}],
        [{'quantity_requested': 2 ** 31, 'item_id': 1}],
        [{'quantity_requested': 1, 'item_id': 404}],
        [{'quantity_requested': 1, 'item_name': "No such thing"}],
        [{'quantity_requested': 1, 'item_id': 1}, {'quantity_requested': 2, 'item_id': 1}],
    ])
    async def test_invalid_lines(self, portal, stock, approvers, requester, lines):
        with pytest.raises(InvalidInputError):
            await portal.create_request(requester, [RequestLine(**line) for line in lines],
                                        ApproverSelection.explicit(approvers[0].user_id))
        assert await portal.list_requests() == []

    async def test_invalid_approvers(self, portal, stock, approvers, requester):
        line = [RequestLine(quantity_requested=1, item_id=stock[0].item_id)]
        issuer = await portal.create_user("storekeeper", "Store Keeper", UserRole.Issuer)

        with pytest.raises(InvalidInputError):
            await portal.create_request(requester, line, ApproverSelection())
        with pytest.raises(InvalidInputError):
            await portal.create_request(requester, line, ApproverSelection.explicit(999))
        with pytest.raises(InvalidInputError):
            await portal.create_request(requester, line,
                                        ApproverSelection.explicit(issuer.user_id))

    async def test_unknown_request_type(self, portal, stock, approvers, requester):
        with pytest.raises(InvalidInputError):
            await portal.create_request(
                requester,
                [RequestLine(quantity_requested=1, item_id=stock[0].item_id)],
                ApproverSelection.explicit(approvers[0].user_id),
                "loan",
            )

    async def test_requires_creator(self, portal, stock, approvers):
        with pytest.raises(InvalidInputError):
            await portal.create_request(
                RequesterInfo(created_by=" "),
                [RequestLine(quantity_requested=1, item_id=stock[0].item_id)],
                ApproverSelection.explicit(approvers[0].user_id),
            )


class TestDecisions:
    """Test cases for approve and reject"""

    async def test_first_approval_wins(self, portal, stock, approvers, make_request, notifier):
        request = await make_request([(stock[0].item_id, 1)], approvers)
        approved = await portal.approve(request.request_id, approvers[1].user_id, signature="sig")
        await portal.signal.drain()

        assert approved.status == RequestStatus.Approved
        assert approved.approvals[0].approver_name == "Second Approver"
        assert approved.approvals[0].signature == "sig"
        assert (request.request_id, RequestStatus.Approved) in notifier.statuses

        with pytest.raises(InvalidStateError):
            await portal.approve(request.request_id, approvers[0].user_id)

    async def test_reject(self, portal, stock, approvers, make_request):
        request = await make_request([(stock[0].item_id, 1)], approvers)
        rejected = await portal.reject(request.request_id, approvers[0].user_id, "Not budgeted")

        assert rejected.status == RequestStatus.Rejected
        assert rejected.approvals[0].reason == "Not budgeted"
        summary = (await portal.list_requests())[0]
        assert summary.reject_reason == "Not budgeted"

        with pytest.raises(InvalidStateError):
            await portal.finalize(request.request_id,
                                  [FulfilledLine(item_id=stock[0].item_id, quantity_received=1)], "Sam")

    async def test_reject_requires_reason(self, portal, stock, approvers, make_request):
        request = await make_request([(stock[0].item_id, 1)], approvers)
        with pytest.raises(InvalidInputError):
            await portal.reject(request.request_id, approvers[0].user_id, "")
        assert (await portal.requests.get_request(request.request_id)).status == RequestStatus.Pending

    async def test_unassigned_approver_forbidden(self, portal, stock, approvers, make_request):
        outsider = await portal.create_user("approver3", "Third Approver", UserRole.Approver)
        request = await make_request([(stock[0].item_id, 1)], approvers[:1])

        with pytest.raises(ForbiddenError):
            await portal.approve(request.request_id, outsider.user_id)
        request = await portal.requests.get_request(request.request_id)
        assert request.status == RequestStatus.Pending
        assert request.approvals == []

    async def test_unknown_request(self, portal, approvers):
        with pytest.raises(NonExistentRequestIdError):
            await portal.approve(404, approvers[0].user_id)

    async def test_rejected_request_is_final(self, portal, stock, approvers, make_request,
                                             requester):
        request = await make_request([(stock[0].item_id, 1)], approvers)
        await portal.reject(request.request_id, approvers[0].user_id, "Not budgeted")

        with pytest.raises(InvalidStateError):
            await portal.approve(request.request_id, approvers[1].user_id)
        with pytest.raises(InvalidStateError):
            await portal.update_request(request.request_id, requester,
                                        [RequestLine(quantity_requested=3, item_id=stock[0].item_id)])

        request = await portal.requests.get_request(request.request_id)
        assert request.status == RequestStatus.Rejected
        assert [line.quantity_requested for line in request.items] == [1]
        assert len(request.approvals) == 1

    async def test_demoted_approver_cannot_decide(self, portal, stock, approvers, make_request):
        request = await make_request([(stock[0].item_id, 1)], approvers)
        await portal.update_user_role(approvers[0].user_id, UserRole.Requester)

        with pytest.raises(ForbiddenError):
            await portal.approve(request.request_id, approvers[0].user_id)
        approved = await portal.approve(request.request_id, approvers[1].user_id)
        assert approved.status == RequestStatus.Approved

    async def test_all_policy(self, portal, stock, approvers, make_request, all_policy_requests):
        request = await make_request([(stock[0].item_id, 1)], approvers)

        partial = await all_policy_requests.approve(request.request_id, approvers[0].user_id)
        assert partial.status == RequestStatus.Pending
        with pytest.raises(InvalidStateError):
            await all_policy_requests.approve(request.request_id, approvers[0].user_id)

        approved = await all_policy_requests.approve(request.request_id, approvers[1].user_id)
        assert approved.status == RequestStatus.Approved
        assert len(approved.approvals) == 2

    async def test_all_policy_single_reject(self, portal, stock, approvers, make_request,
                                            all_policy_requests):
        request = await make_request([(stock[0].item_id, 1)], approvers)
        await all_policy_requests.approve(request.request_id, approvers[0].user_id)
        rejected = await all_policy_requests.reject(request.request_id, approvers[1].user_id,
                                                    "Wrong site")
        assert rejected.status == RequestStatus.Rejected


class TestDeriveStatus:
    """Test cases for the approval fold"""

    class _Decision:
        def __init__(self, approver_id, decision):
            self.approver_id = approver_id
            self.decision = decision

    def test_any(self):
        assert derive_status(ApprovalPolicy.Any, [1, 2], []) == RequestStatus.Pending
        assert derive_status(ApprovalPolicy.Any, [1, 2],
                             [self._Decision(2, Decision.Approve)]) == RequestStatus.Approved

    def test_all(self):
        one = [self._Decision(1, Decision.Approve)]
        both = one + [self._Decision(2, Decision.Approve)]
        assert derive_status(ApprovalPolicy.All, [1, 2], one) == RequestStatus.Pending
        assert derive_status(ApprovalPolicy.All, [1, 2], both) == RequestStatus.Approved
        assert derive_status(ApprovalPolicy.All, [1, 2],
                             one + [self._Decision(2, Decision.Reject)]) == RequestStatus.Rejected


class TestFinalize:
    """Test cases for fulfilment"""

    async def test_partial_fulfilment(self, portal, stock, approvers, make_request, notifier):
        """Two of three lines fulfilled; the third is recorded as nothing received"""
        request = await make_request(
            [(stock[0].item_id, 6), (stock[1].item_id, 3), (stock[2].item_id, 2)], approvers
        )
        await portal.approve(request.request_id, approvers[0].user_id)

        completed = await portal.finalize(request.request_id, [
            FulfilledLine(item_id=stock[0].item_id, quantity_received=6),
            FulfilledLine(item_id=stock[1].item_id, quantity_received=1),
        ], released_by="Sam")
        await portal.signal.drain()

        assert completed.status == RequestStatus.Completed
        assert completed.released_by == "Sam"
        assert [line.quantity_received for line in completed.items] == [6, 1, 0]
        assert await quantities(portal, stock) == [4, 9, 10]
        assert stock[0].item_id in notifier.alerted_item_ids
        assert notifier.statuses[-1] == (request.request_id, RequestStatus.Completed)

    async def test_insufficient_rolls_back_all_lines(self, portal, stock, approvers, make_request):
        request = await make_request([(stock[0].item_id, 5), (stock[1].item_id, 10)], approvers)
        await portal.approve(request.request_id, approvers[0].user_id)
        await portal.issue("Alice", stock[1].item_id, 4)

        with pytest.raises(InsufficientStockError) as exc_info:
            await portal.finalize(request.request_id, [
                FulfilledLine(item_id=stock[0].item_id, quantity_received=5),
                FulfilledLine(item_id=stock[1].item_id, quantity_received=10),
            ], released_by="Sam")

        assert exc_info.value.available == 6
        assert await quantities(portal, stock) == [10, 6, 10]
        request = await portal.requests.get_request(request.request_id)
        assert request.status == RequestStatus.Approved
        assert all(line.quantity_received is None for line in request.items)

    async def test_line_limits(self, portal, stock, approvers, make_request):
        request = await make_request([(stock[0].item_id, 2)], approvers)
        await portal.approve(request.request_id, approvers[0].user_id)

        bad_lines = [
            [{'item_id': stock[0].item_id, 'quantity_received': 3}],
            [{'item_id': stock[0].item_id, 'quantity_received': -1}],
            [{'item_id': stock[0].item_id, 'quantity_returned': 1}],
            [{'item_id': stock[0].item_id}],
            [{'item_id': stock[1].item_id, 'quantity_received': 1}],
            [{'item_id': stock[0].item_id, 'quantity_received': 1},
             {'item_id': stock[0].item_id, 'quantity_received': 1}],
            [],
        ]
        for lines in bad_lines:
            with pytest.raises(InvalidInputError):
                await portal.finalize(request.request_id,
                                      [FulfilledLine(**line) for line in lines], released_by="Sam")
        assert await quantities(portal, stock) == [10, 10, 10]
        assert (await portal.requests.get_request(request.request_id)).status == RequestStatus.Approved

    async def test_lines_in_any_order(self, portal, stock, approvers, make_request):
        """Lines listed against item id order still lock and move every item"""
        request = await make_request(
            [(stock[0].item_id, 1), (stock[1].item_id, 2), (stock[2].item_id, 3)], approvers
        )
        await portal.approve(request.request_id, approvers[0].user_id)

        completed = await portal.finalize(request.request_id, [
            FulfilledLine(item_id=stock[2].item_id, quantity_received=3),
            FulfilledLine(item_id=stock[0].item_id, quantity_received=1),
            FulfilledLine(item_id=stock[1].item_id, quantity_received=2),
        ], released_by="Sam")

        assert completed.status == RequestStatus.Completed
        assert await quantities(portal, stock) == [9, 8, 7]

    async def test_crossing_finalizations(self, portal, stock, approvers, make_request):
        """Two requests over the same items, listed in opposite orders, both complete"""
        first = await make_request([(stock[0].item_id, 1), (stock[1].item_id, 1)], approvers)
        second = await make_request([(stock[0].item_id, 2), (stock[1].item_id, 2)], approvers)
        for request in (first, second):
            await portal.approve(request.request_id, approvers[0].user_id)

        await asyncio.gather(
            portal.finalize(first.request_id, [
                FulfilledLine(item_id=stock[0].item_id, quantity_received=1),
                FulfilledLine(item_id=stock[1].item_id, quantity_received=1),
            ], "Sam"),
            portal.finalize(second.request_id, [
                FulfilledLine(item_id=stock[1].item_id, quantity_received=2),
                FulfilledLine(item_id=stock[0].item_id, quantity_received=2),
            ], "Sue"),
        )
        assert await quantities(portal, stock) == [7, 7, 10]

    async def test_finalize_requires_approval(self, portal, stock, approvers, make_request):
        request = await make_request([(stock[0].item_id, 2)], approvers)
        lines = [FulfilledLine(item_id=stock[0].item_id, quantity_received=2)]

        with pytest.raises(InvalidStateError):
            await portal.finalize(request.request_id, lines, released_by="Sam")

        await portal.approve(request.request_id, approvers[0].user_id)
        await portal.finalize(request.request_id, lines, released_by="Sam")
        with pytest.raises(InvalidStateError):
            await portal.finalize(request.request_id, lines, released_by="Sam")
        with pytest.raises(InvalidStateError):
            await portal.reject(request.request_id, approvers[1].user_id, "too late")
        assert await quantities(portal, stock) == [8, 10, 10]

    async def test_item_return_restores_stock(self, portal, stock, approvers, make_request):
        """Taking out and returning the same amount leaves stock unchanged"""
        taken = await make_request([(stock[0].item_id, 4)], approvers)
        await portal.approve(taken.request_id, approvers[0].user_id)
        await portal.finalize(taken.request_id,
                              [FulfilledLine(item_id=stock[0].item_id, quantity_received=4)], "Sam")
        assert await quantities(portal, stock[:1]) == [6]

        returned = await make_request([(stock[0].item_id, 4)], approvers, RequestType.ItemReturn)
        await portal.approve(returned.request_id, approvers[0].user_id)
        completed = await portal.finalize(
            returned.request_id, [FulfilledLine(item_id=stock[0].item_id, quantity_returned=4)], "Sam"
        )

        assert completed.items[0].quantity_returned == 4
        assert await quantities(portal, stock[:1]) == [10]

    async def test_concurrent_finalize(self, portal, stock, approvers, make_request):
        """Only one of two racing finalizations moves stock"""
        request = await make_request([(stock[0].item_id, 3)], approvers)
        await portal.approve(request.request_id, approvers[0].user_id)
        lines = [FulfilledLine(item_id=stock[0].item_id, quantity_received=3)]

        results = await asyncio.gather(
            portal.finalize(request.request_id, lines, "Sam"),
            portal.finalize(request.request_id, lines, "Sue"),
            return_exceptions=True,
        )
        failures = [r for r in results if isinstance(r, Exception)]
        assert len(failures) == 1
        assert isinstance(failures[0], InvalidStateError)
        assert await quantities(portal, stock[:1]) == [7]


class TestUpdateRequest:
    """Test cases for editing a pending request"""

    async def test_update_request(self, portal, stock, approvers, make_request):
        request = await make_request([(stock[0].item_id, 4), (stock[1].item_id, 2)], approvers)
        updated = await portal.update_request(
            request.request_id,
            RequesterInfo(created_by="Tom", project_name="Phase 2", location="Block D"),
            [RequestLine(quantity_requested=5, item_id=stock[1].item_id),
             RequestLine(quantity_requested=1, item_id=stock[2].item_id)],
        )

        assert updated.project_name == "Phase 2"
        assert updated.team_leader_name == "Tom"
        assert sorted((line.item_id, line.quantity_requested) for line in updated.items) == [
            (stock[1].item_id, 5), (stock[2].item_id, 1)
        ]

    async def test_update_only_while_pending(self, portal, stock, approvers, make_request, requester):
        request = await make_request([(stock[0].item_id, 4)], approvers)
        await portal.approve(request.request_id, approvers[0].user_id)

        with pytest.raises(InvalidStateError):
            await portal.update_request(request.request_id, requester,
                                        [RequestLine(quantity_requested=1, item_id=stock[0].item_id)])
