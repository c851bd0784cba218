"""
命名服務：生成集合點報到代碼、夥伴顯示名稱

純計算邏輯，不涉及狀態轉換
"""
import random
import string
from typing import Iterable, List

from models import Participant

# 去掉容易看錯的字元（0/O、1/I）
CHECKIN_ALPHABET = "".join(c for c in string.ascii_uppercase + string.digits if c not in "01OI")


def generate_checkin_code(length: int = 4) -> str:
    """
    生成集合點的報到代碼

    範例：K7QZ, 3MHX

    注意：
    - 不檢查唯一性（代碼只跟自己的集合點比對）
    - 代碼貼在集合點現場，參加者到達後輸入
    """
    return ''.join(random.choices(CHECKIN_ALPHABET, k=length))


def normalize_checkin_code(code: str) -> str:
    """比對前統一格式：去空白、轉大寫"""
    return "".join((code or "").split()).upper()


def partner_display_names(members: Iterable[Participant], participant_id: str) -> List[str]:
    """
    同組其他成員的顯示名稱（不含自己）

    範例：
        members = [Alice Smith, Bob Lee, Cara Diaz], participant_id = Bob
        -> ["Alice Smith", "Cara Diaz"]
    """
    return [m.display_name for m in members if m.id != participant_id]
