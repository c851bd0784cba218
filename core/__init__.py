"""
核心業務邏輯層

這個 package 包含所有會改變狀態的業務邏輯，包括：
- 狀態機：集中管理 Registration 的狀態轉換與顯示狀態
- Manager：參加者動作（RegistrationManager）、回合 sweep 與配對（RoundManager）
- Locks：並發控制工具（行級鎖、配對鎖）
"""
