"""
服務層

這個 package 包含純計算邏輯，不負責狀態轉換：
- RoundTimingService：回合時間點推算
- HistoryService：見面記錄統計
- ScoringService：配對分數
- MatchingService：貪婪分組演算法
- NamingService：報到代碼、夥伴名稱
- NotificationService：fire-and-forget 通知
"""
