"""
实时行情指标服务
多数据源行情 Tick 接入，按标的维护流式 MACD 指标状态，双层存储（缓存 + 持久化）

架构分层：
  数据获取层 (Acquisition)  → 从多个行情源拉取原始报价，超时 + 退避重试
  处理层     (Processing)   → 原始报价标准化为 Tick
  分析层     (Analysis)     → 按标的流式计算 MACD（快慢 EMA / 信号线 / 柱）
  缓存层     (Cache)        → Redis（进程内字典降级）保存各标的最新状态
  持久层     (Durable)      → MongoDB（文件降级）追加写入历史记录
"""

__version__ = "1.0.0"
