"""
Unit tests for event recorders.
"""
import asyncio
import pytest
from datetime import timedelta

from marketplace_analytics.config import PerformanceConfig, SamplingConfig, TrackingConfig
from marketplace_analytics.models import (
    BusinessEventReport,
    BusinessEventType,
    ClientEvent,
    InteractionCategory,
    PerformanceReport,
    PerformanceTimings,
    SearchReport,
    TableName,
)
from marketplace_analytics.recorders import (
    BackgroundDispatcher,
    EventRecorder,
    Sampler,
    conversion_value_for,
)
from marketplace_analytics.repository import InMemoryRepository, QueryError
from marketplace_analytics.tracking import SessionHandle

from conftest import FIXED_NOW


class BrokenRepository(InMemoryRepository):
    """Repository whose writes always fail."""

    async def insert_page_view(self, page_view):
        raise QueryError("insert failed")

    async def insert_interaction(self, interaction):
        raise QueryError("insert failed")

    async def insert_business_event(self, event):
        raise QueryError("insert failed")


@pytest.fixture
def recorder(repository, clock):
    """Create a recorder over the in-memory repository."""
    return EventRecorder(repository, clock=clock)


@pytest.fixture
def handle():
    """Create a resolved session handle."""
    return SessionHandle(session_id="s1")


class TestConversionValues:
    """Tests for business conversion values."""

    @pytest.mark.parametrize("event_type,expected", [
        (BusinessEventType.DEALER_CONTACT, 50.0),
        (BusinessEventType.PHONE_CALL, 75.0),
        (BusinessEventType.LISTING_VIEW, 5.0),
        (BusinessEventType.LISTING_FAVORITE, 10.0),
        (BusinessEventType.SEARCH_PERFORMED, 2.0),
        (BusinessEventType.NEWS_READ, 3.0),
        (BusinessEventType.FORM_SUBMISSION, 1.0),
    ])
    def test_values(self, event_type, expected):
        """Test fixed conversion values per event type."""
        assert conversion_value_for(event_type) == expected


class TestSampler:
    """Tests for the sampler."""

    def test_disabled_keeps_everything(self):
        """Test sampling disabled keeps every event."""
        sampler = Sampler(SamplingConfig(enabled=False, rate=0.1))
        assert all(sampler.should_keep() for _ in range(10))

    def test_rate_keeps_fraction(self):
        """Test a rate of 0.5 keeps every second event."""
        sampler = Sampler(SamplingConfig(enabled=True, rate=0.5))
        kept = [sampler.should_keep() for _ in range(10)]
        assert kept.count(True) == 5

    def test_zero_rate_drops_everything(self):
        """Test a zero rate drops every event."""
        sampler = Sampler(SamplingConfig(enabled=True, rate=0.0))
        assert not any(sampler.should_keep() for _ in range(10))


class TestRecordPageView:
    """Tests for page view recording."""

    @pytest.mark.asyncio
    async def test_records_and_appends_to_session(self, repository, recorder, handle, make_facts, make_session):
        """Test a GET page request stores a page view and updates the session."""
        await repository.create_session(make_session("s1", page_views=0))

        stored = await recorder.record_page_view(handle, make_facts(path="/cars/42", query={"title": "Audi"}))

        assert stored is True
        views = await repository.list_page_views(FIXED_NOW, FIXED_NOW + timedelta(seconds=1))
        assert views[0].page == "/cars/42"
        assert views[0].title == "Audi"
        session = await repository.get_session("s1")
        assert session.pages == ["/cars/42"]
        assert session.total_page_views == 1

    @pytest.mark.asyncio
    async def test_skips_api_and_non_get(self, repository, recorder, handle, make_facts):
        """Test API paths and non-GET methods are not page views."""
        assert await recorder.record_page_view(handle, make_facts(path="/api/listings")) is False
        assert await recorder.record_page_view(handle, make_facts(method="POST")) is False
        assert await repository.count(TableName.PAGE_VIEWS) == 0

    @pytest.mark.asyncio
    async def test_failure_is_swallowed(self, clock, handle, make_facts):
        """Test storage failure returns False instead of raising."""
        recorder = EventRecorder(BrokenRepository(), clock=clock)

        assert await recorder.record_page_view(handle, make_facts()) is False

    @pytest.mark.asyncio
    async def test_sampled_out(self, repository, clock, handle, make_facts, make_session):
        """Test a zero sampling rate drops page views but still counts them on the session."""
        await repository.create_session(make_session("s1", page_views=0))
        recorder = EventRecorder(repository, sampling=SamplingConfig(enabled=True, rate=0.0), clock=clock)

        assert await recorder.record_page_view(handle, make_facts()) is False
        assert await repository.count(TableName.PAGE_VIEWS) == 0
        session = await repository.get_session("s1")
        assert session.total_page_views == 1

    @pytest.mark.asyncio
    async def test_sampling_keeps_session_counter(self, repository, clock, handle, make_facts, make_session):
        """Test sampling thins stored page views while the session count stays exact."""
        await repository.create_session(make_session("s1", page_views=0))
        recorder = EventRecorder(repository, sampling=SamplingConfig(enabled=True, rate=0.5), clock=clock)

        for i in range(4):
            await recorder.record_page_view(handle, make_facts(path=f"/cars/{i}"))

        session = await repository.get_session("s1")
        assert session.total_page_views == 4
        assert session.pages == ["/cars/0", "/cars/1", "/cars/2", "/cars/3"]
        assert await repository.count(TableName.PAGE_VIEWS) == 2


class TestRecordSystemEvents:
    """Tests for api_call and error interactions."""

    @pytest.mark.asyncio
    async def test_api_call_metadata(self, repository, recorder, handle, make_facts):
        """Test api_call interactions describe the response."""
        facts = make_facts(path="/api/listings", method="POST", headers={"authorization": "Bearer t"})

        await recorder.record_api_call(handle, facts, 201, 12.3456)

        [interaction] = await repository.list_interactions(FIXED_NOW, FIXED_NOW + timedelta(seconds=1))
        assert interaction.event_type == "api_call"
        assert interaction.category == InteractionCategory.SYSTEM
        assert interaction.metadata["statusCode"] == 201
        assert interaction.metadata["responseTime"] == 12.35
        assert interaction.metadata["hasAuth"] is True
        assert interaction.metadata["endpoint"] == "/api/listings"

    @pytest.mark.asyncio
    async def test_error_below_400_ignored(self, repository, recorder, handle, make_facts):
        """Test successful responses produce no error interaction."""
        assert await recorder.record_error(handle, make_facts(), 302) is False

    @pytest.mark.asyncio
    async def test_error_from_status(self, repository, recorder, handle, make_facts):
        """Test a 404 is recorded as a client error."""
        await recorder.record_error(handle, make_facts(query={"q": "x"}), 404)

        [interaction] = await repository.list_interactions(FIXED_NOW, FIXED_NOW + timedelta(seconds=1))
        assert interaction.event_type == "error"
        assert interaction.metadata["errorType"] == "ClientError"
        assert interaction.metadata["errorMessage"] == "Not Found"
        assert interaction.metadata["query"] == {"q": "x"}

    @pytest.mark.asyncio
    async def test_error_from_exception_truncated(self, repository, clock, handle, make_facts):
        """Test exception messages are truncated and carry a stack outside production."""
        recorder = EventRecorder(repository, tracking=TrackingConfig(max_error_message_length=50), clock=clock)
        try:
            raise ValueError("x" * 200)
        except ValueError as exc:
            await recorder.record_error(handle, make_facts(), 500, exc)

        [interaction] = await repository.list_interactions(FIXED_NOW, FIXED_NOW + timedelta(seconds=1))
        assert interaction.metadata["errorType"] == "ValueError"
        assert len(interaction.metadata["errorMessage"]) == 50
        assert "Traceback" in interaction.metadata["stack"]

    @pytest.mark.asyncio
    async def test_no_stack_in_production(self, repository, clock, handle, make_facts):
        """Test stacks are omitted in production."""
        recorder = EventRecorder(repository, production=True, clock=clock)

        await recorder.record_error(handle, make_facts(), 500, RuntimeError("boom"))

        [interaction] = await repository.list_interactions(FIXED_NOW, FIXED_NOW + timedelta(seconds=1))
        assert "stack" not in interaction.metadata

    @pytest.mark.asyncio
    async def test_errors_not_sampled(self, repository, clock, handle, make_facts):
        """Test errors are kept even when sampling drops everything else."""
        recorder = EventRecorder(repository, sampling=SamplingConfig(enabled=True, rate=0.0), clock=clock)

        assert await recorder.record_error(handle, make_facts(), 503) is True


class TestClientEvents:
    """Tests for the ingestion paths."""

    @pytest.mark.asyncio
    async def test_plain_event_is_interaction_only(self, repository, recorder, make_facts):
        """Test an unmapped event type writes only an interaction."""
        event = ClientEvent(event_type="gallery_swipe", page="/cars/1")

        assert await recorder.track_client_event(event, make_facts(), session_id="s1") is True
        assert await repository.count(TableName.INTERACTIONS) == 1
        assert await repository.count(TableName.BUSINESS_EVENTS) == 0

    @pytest.mark.asyncio
    async def test_business_event_type_also_writes_business_event(self, repository, recorder):
        """Test dealer_contact produces a business event with its conversion value."""
        event = ClientEvent(
            event_type="dealer_contact",
            category=InteractionCategory.CONVERSION,
            page="/cars/1",
            metadata={"dealerId": "d-9", "price": "25000", "contactMethod": "form"},
        )

        await recorder.track_client_event(event, session_id="s1")

        [business] = await repository.list_business_events(FIXED_NOW, FIXED_NOW + timedelta(seconds=1))
        assert business.event_type == BusinessEventType.DEALER_CONTACT
        assert business.conversion_value == 50.0
        assert business.entity_id == "d-9"
        assert business.value == 25000.0
        assert business.details.contact_method == "form"
        assert business.details.source == "/cars/1"

    @pytest.mark.asyncio
    async def test_session_fallback_to_anonymous(self, repository, recorder):
        """Test events without any session id are stored under 'anonymous'."""
        await recorder.track_client_event(ClientEvent(event_type="click"))

        [interaction] = await repository.list_interactions(FIXED_NOW, FIXED_NOW + timedelta(seconds=1))
        assert interaction.session_id == "anonymous"

    @pytest.mark.asyncio
    async def test_storage_failure_still_returns(self, clock):
        """Test ingestion never raises on storage failure."""
        recorder = EventRecorder(BrokenRepository(), clock=clock)

        assert await recorder.track_client_event(ClientEvent(event_type="listing_view")) is False

    @pytest.mark.asyncio
    async def test_track_search(self, repository, recorder, make_facts):
        """Test a search writes a navigation interaction and a search_performed event."""
        search = SearchReport(query="audi a4", category="cars", results_count=0, filters={"year": 2020})

        assert await recorder.track_search(search, "s1", make_facts()) is True

        [interaction] = await repository.list_interactions(FIXED_NOW, FIXED_NOW + timedelta(seconds=1))
        assert interaction.event_type == "search"
        assert interaction.category == InteractionCategory.NAVIGATION
        assert interaction.metadata["hasResults"] is False
        [business] = await repository.list_business_events(FIXED_NOW, FIXED_NOW + timedelta(seconds=1))
        assert business.event_type == BusinessEventType.SEARCH_PERFORMED
        assert business.details.search_query == "audi a4"

    @pytest.mark.asyncio
    async def test_track_business_report_default_value(self, repository, recorder):
        """Test a typed report without a value gets the table value."""
        report = BusinessEventReport(event_type=BusinessEventType.PHONE_CALL, entity_id="l-1")

        await recorder.track_business_report(report, "s1")

        [business] = await repository.list_business_events(FIXED_NOW, FIXED_NOW + timedelta(seconds=1))
        assert business.conversion_value == 75.0
        assert business.session_id == "s1"

    @pytest.mark.asyncio
    async def test_record_performance(self, repository, recorder):
        """Test timing payloads are stored as performance samples."""
        report = PerformanceReport(page="/cars", metrics=PerformanceTimings(load_time=1200.0))

        assert await recorder.record_performance("s1", report) is True
        assert await repository.count(TableName.PERFORMANCE_METRICS) == 1

    @pytest.mark.asyncio
    async def test_record_batch_chunks(self, repository, clock):
        """Test batches larger than the batch size are split."""
        recorder = EventRecorder(repository, performance=PerformanceConfig(batch_size=100), clock=clock)
        events = [ClientEvent(event_type="impression") for _ in range(250)]

        assert await recorder.record_batch(events, session_id="s1") is True
        assert await repository.count(TableName.INTERACTIONS) == 250


class TestBackgroundDispatcher:
    """Tests for off-path writes."""

    @pytest.mark.asyncio
    async def test_dispatch_and_drain(self):
        """Test dispatched writes complete on drain."""
        dispatcher = BackgroundDispatcher(timeout_seconds=1.0)
        done = []

        async def write():
            done.append(True)

        dispatcher.dispatch(write())
        await dispatcher.drain()

        assert done == [True]
        assert dispatcher.pending == 0
        assert dispatcher.stats["dispatched"] == 1

    @pytest.mark.asyncio
    async def test_timeout_is_counted(self):
        """Test slow writes are abandoned."""
        dispatcher = BackgroundDispatcher(timeout_seconds=0.01)

        dispatcher.dispatch(asyncio.sleep(1))
        await dispatcher.drain()

        assert dispatcher.stats["timed_out"] == 1

    @pytest.mark.asyncio
    async def test_failure_is_counted(self):
        """Test unexpected errors are logged, not raised."""
        dispatcher = BackgroundDispatcher(timeout_seconds=1.0)

        async def explode():
            raise RuntimeError("boom")

        dispatcher.dispatch(explode())
        await dispatcher.drain()

        assert dispatcher.stats["failed"] == 1
