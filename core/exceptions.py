"""
自定義異常類別

集中管理所有業務邏輯異常，方便 API 層統一處理

分類：
- NotFound：資料不存在（404）
- Guard failure：時間窗口、代碼、夥伴狀態不符（400），直接回報給使用者，不自動重試
- 配對鎖沒搶到「不是」異常，由 MatchingOutcome.already_completed 表示
"""


class NetworkingException(Exception):
    """所有引擎異常的基類"""
    pass


# ============ NotFound ============

class NotFound(NetworkingException):
    """資料不存在"""
    pass


class SessionNotFound(NotFound):
    """Session 不存在"""
    def __init__(self, session_id):
        self.session_id = session_id
        super().__init__(f"Session {session_id} not found")


class RoundNotFound(NotFound):
    """回合不存在（或不屬於指定的 Session）"""
    def __init__(self, round_id):
        self.round_id = round_id
        super().__init__(f"Round {round_id} not found")


class ParticipantNotFound(NotFound):
    """參加者不存在"""
    def __init__(self, participant_id):
        self.participant_id = participant_id
        super().__init__(f"Participant {participant_id} not found")


class RegistrationNotFound(NotFound):
    """參加者沒有報名這個回合"""
    def __init__(self, participant_id, round_id):
        self.participant_id = participant_id
        self.round_id = round_id
        super().__init__(
            f"Registration of participant {participant_id} for round {round_id} not found"
        )


# ============ 報名相關異常 ============

class RegistrationClosed(NetworkingException):
    """已超過報名截止時間（round start - safety window）"""
    pass


class AlreadyRegistered(NetworkingException):
    """參加者已經報名過這個回合"""
    pass


class RoundFull(NetworkingException):
    """回合人數已滿"""
    pass


class TooLateToCancel(NetworkingException):
    """已超過取消報名的時間"""
    pass


# ============ 回合時間窗口異常 ============

class WindowClosed(NetworkingException):
    """回合已開始，不能再確認出席"""
    pass


class RoundNotStarted(NetworkingException):
    """回合尚未開始，不能執行配對"""
    pass


class RoundEnded(NetworkingException):
    """回合已結束，不能再配對或進入見面流程"""
    pass


# ============ 見面流程異常 ============

class InvalidCheckinCode(NetworkingException):
    """報到代碼與分配到的集合點不符"""
    pass


class PartnerNotReady(NetworkingException):
    """同組的夥伴還沒報到"""
    pass


# ============ 狀態轉換異常 ============

class InvalidStateTransition(NetworkingException):
    """非法的狀態轉換"""
    pass
