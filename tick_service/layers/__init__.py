"""
分层实现：
  acquisition  → 行情源拉取（超时 + 退避重试）
  processing   → 报价清洗、标准化为 Tick
  analysis     → MACD 流式计算与重放
  cache        → 每个标的最新 (Tick, 指标)
  durable      → 只追加的历史记录
  write_queue  → 按标的有界的持久化写队列
"""
