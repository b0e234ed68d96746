from .engine import add_point, apply_command, change_current_server, set_winner, switch_server_team
from .errors import (
    CapabilityError,
    PersistenceError,
    RaceConditionError,
    RallyError,
    ValidationError,
)
from .history import UndoHistory
from .match_config import (
    MatchConfig,
    Player,
    TeamConfig,
    calculate_side_switch_sum,
    default_coin_toss_rule,
    preset_for_format,
)
from .outcome import DomainEvent, MutationOutcome
from .session import MatchSession
from .set_config import (
    apply_set_configuration,
    check_set_configuration,
    edit_set_configuration,
    is_set_configuration_valid,
    requires_coin_toss,
)
from .settings import Settings, get_settings
from .state import default_state, hydrate_state, score_rows_to_state, state_to_row
from .store import (
    InMemoryEventSink,
    InMemoryLegacyScoreStore,
    InMemoryStateStore,
    InMemoryTimeoutLedger,
)
from .sync import LoadResult, MatchStateRepository, subscribe
from .timeouts import finalize_timeout, start_timeout, timer_policies
from .timer import Timer, build_timer, parse_timer, remaining_seconds
from .types import CommandPayload, MatchState, SetConfiguration, TimerRecord
from .validation import InputSanitizer, SetConfigurationInput, TeamSetupInput, ValidatedCmd

__all__ = [
    "CapabilityError",
    "CommandPayload",
    "DomainEvent",
    "InMemoryEventSink",
    "InMemoryLegacyScoreStore",
    "InMemoryStateStore",
    "InMemoryTimeoutLedger",
    "InputSanitizer",
    "LoadResult",
    "MatchConfig",
    "MatchSession",
    "MatchState",
    "MatchStateRepository",
    "MutationOutcome",
    "PersistenceError",
    "Player",
    "RaceConditionError",
    "RallyError",
    "SetConfiguration",
    "SetConfigurationInput",
    "Settings",
    "TeamConfig",
    "TeamSetupInput",
    "Timer",
    "TimerRecord",
    "UndoHistory",
    "ValidatedCmd",
    "ValidationError",
    "add_point",
    "apply_command",
    "apply_set_configuration",
    "build_timer",
    "calculate_side_switch_sum",
    "change_current_server",
    "check_set_configuration",
    "default_coin_toss_rule",
    "default_state",
    "edit_set_configuration",
    "finalize_timeout",
    "get_settings",
    "hydrate_state",
    "is_set_configuration_valid",
    "parse_timer",
    "preset_for_format",
    "remaining_seconds",
    "requires_coin_toss",
    "score_rows_to_state",
    "set_winner",
    "start_timeout",
    "state_to_row",
    "subscribe",
    "switch_server_team",
    "timer_policies",
]
