"""
API 層

只負責 HTTP：解析請求、呼叫 core 的 Manager、把業務異常轉成 HTTP 狀態碼
"""
